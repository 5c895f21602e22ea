"""GraphQL documents used by the collector.

Every connection query takes a ``$cursor`` variable; the client injects it.
"""

ACTOR_FRAGMENT = """
fragment ActorFields on Actor {
  __typename
  login
  avatarUrl(size: 200)
  ... on User { id name createdAt updatedAt }
  ... on Organization { id name createdAt updatedAt }
  ... on Bot { id createdAt updatedAt }
  ... on Mannequin { id createdAt updatedAt }
  ... on EnterpriseUserAccount { id name createdAt updatedAt }
}
"""

REACTION_FIELDS = """
reactions(first: 100) {
  totalCount
  nodes { id content createdAt user { id login name avatarUrl(size: 200) } }
}
"""

COMMENT_FIELDS = """
id
url
body
createdAt
updatedAt
author { ...ActorFields }
""" + REACTION_FIELDS

PROJECT_ITEM_FIELDS = """
projectItems(first: 20) {
  nodes {
    id
    updatedAt
    project { title }
    status: fieldValueByName(name: "Status") {
      ... on ProjectV2ItemFieldSingleSelectValue { name updatedAt }
    }
    priority: fieldValueByName(name: "Priority") {
      ... on ProjectV2ItemFieldSingleSelectValue { name }
      ... on ProjectV2ItemFieldTextValue { text }
    }
    weight: fieldValueByName(name: "Weight") {
      ... on ProjectV2ItemFieldSingleSelectValue { name }
      ... on ProjectV2ItemFieldNumberValue { number }
      ... on ProjectV2ItemFieldTextValue { text }
    }
    initiationOptions: fieldValueByName(name: "Initiation Options") {
      ... on ProjectV2ItemFieldSingleSelectValue { name }
      ... on ProjectV2ItemFieldTextValue { text }
    }
    startDate: fieldValueByName(name: "Start date") {
      ... on ProjectV2ItemFieldDateValue { date }
    }
  }
}
"""

ISSUE_FIELDS = """
__typename
id
number
title
state
url
body
createdAt
updatedAt
closedAt
author { ...ActorFields }
assignees(first: 20) { nodes { id login name avatarUrl(size: 200) } }
labels(first: 20) { nodes { name } }
comments(first: 0) { totalCount }
""" + PROJECT_ITEM_FIELDS + REACTION_FIELDS

PULL_REQUEST_FIELDS = """
__typename
id
number
title
state
url
body
createdAt
updatedAt
closedAt
mergedAt
merged
isDraft
reviewDecision
additions
deletions
changedFiles
author { ...ActorFields }
assignees(first: 20) { nodes { id login name avatarUrl(size: 200) } }
closingIssuesReferences(first: 20) {
  nodes { id number title state url repository { nameWithOwner } }
}
reviewRequests(first: 20) {
  nodes { requestedReviewer { __typename ... on User { id login name avatarUrl(size: 200) } } }
}
comments(first: 0) { totalCount }
reviews(first: 0) { totalCount }
""" + REACTION_FIELDS

DISCUSSION_FIELDS = """
__typename
id
number
title
url
body
closed
createdAt
updatedAt
closedAt
author { ...ActorFields }
category { name }
answerChosenAt
comments(first: 0) { totalCount }
""" + REACTION_FIELDS

ORGANIZATION_REPOSITORIES = """
query OrganizationRepositories($login: String!, $cursor: String) {
  organization(login: $login) {
    repositories(first: 50, after: $cursor, orderBy: { field: PUSHED_AT, direction: DESC }) {
      pageInfo { hasNextPage endCursor }
      nodes {
        id
        name
        nameWithOwner
        url
        isPrivate
        createdAt
        updatedAt
        owner { ...ActorFields }
      }
    }
  }
}
""" + ACTOR_FRAGMENT

REPOSITORY_ISSUES = """
query RepositoryIssues($owner: String!, $name: String!, $cursor: String, $since: DateTime) {
  rateLimit { remaining resetAt }
  repository(owner: $owner, name: $name) {
    issues(first: 50, after: $cursor, orderBy: { field: UPDATED_AT, direction: ASC }, filterBy: { since: $since }) {
      pageInfo { hasNextPage endCursor }
      nodes {
""" + ISSUE_FIELDS + """
      }
    }
  }
}
""" + ACTOR_FRAGMENT

REPOSITORY_DISCUSSIONS = """
query RepositoryDiscussions($owner: String!, $name: String!, $cursor: String) {
  rateLimit { remaining resetAt }
  repository(owner: $owner, name: $name) {
    discussions(first: 50, after: $cursor, orderBy: { field: UPDATED_AT, direction: ASC }) {
      pageInfo { hasNextPage endCursor }
      nodes {
""" + DISCUSSION_FIELDS + """
      }
    }
  }
}
""" + ACTOR_FRAGMENT

REPOSITORY_PULL_REQUESTS = """
query RepositoryPullRequests($owner: String!, $name: String!, $cursor: String) {
  rateLimit { remaining resetAt }
  repository(owner: $owner, name: $name) {
    pullRequests(first: 50, after: $cursor, orderBy: { field: UPDATED_AT, direction: ASC }) {
      pageInfo { hasNextPage endCursor }
      nodes {
""" + PULL_REQUEST_FIELDS + """
      }
    }
  }
}
""" + ACTOR_FRAGMENT

REPOSITORY_OPEN_PULL_REQUEST_REQUESTS = """
query OpenPullRequestReviewRequests($owner: String!, $name: String!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    pullRequests(first: 50, after: $cursor, states: OPEN) {
      pageInfo { hasNextPage endCursor }
      nodes {
        id
        number
        assignees(first: 20) { nodes { id login name avatarUrl(size: 200) } }
        reviewRequests(first: 20) {
          nodes { requestedReviewer { __typename ... on User { id login name avatarUrl(size: 200) } } }
        }
      }
    }
  }
}
"""

PULL_REQUEST_BY_NUMBER = """
query PullRequestByNumber($owner: String!, $name: String!, $number: Int!) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
""" + PULL_REQUEST_FIELDS + """
    }
  }
}
""" + ACTOR_FRAGMENT

PULL_REQUEST_REVIEWS = """
query PullRequestReviews($owner: String!, $name: String!, $number: Int!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      reviews(first: 50, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes { id state body url submittedAt author { ...ActorFields } }
      }
    }
  }
}
""" + ACTOR_FRAGMENT

PULL_REQUEST_TIMELINE = """
query PullRequestTimeline($owner: String!, $name: String!, $number: Int!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      timelineItems(first: 100, after: $cursor, itemTypes: [REVIEW_REQUESTED_EVENT, REVIEW_REQUEST_REMOVED_EVENT]) {
        pageInfo { hasNextPage endCursor }
        nodes {
          __typename
          ... on ReviewRequestedEvent {
            id
            createdAt
            requestedReviewer { __typename ... on User { id login name avatarUrl(size: 200) } }
          }
          ... on ReviewRequestRemovedEvent {
            id
            createdAt
            requestedReviewer { __typename ... on User { id login name avatarUrl(size: 200) } }
          }
        }
      }
    }
  }
}
"""

ISSUE_COMMENTS = """
query IssueComments($owner: String!, $name: String!, $number: Int!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    issue(number: $number) {
      comments(first: 50, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
""" + COMMENT_FIELDS + """
        }
      }
    }
  }
}
""" + ACTOR_FRAGMENT

PULL_REQUEST_COMMENTS = """
query PullRequestComments($owner: String!, $name: String!, $number: Int!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      comments(first: 50, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
""" + COMMENT_FIELDS + """
        }
      }
    }
  }
}
""" + ACTOR_FRAGMENT

PULL_REQUEST_REVIEW_COMMENTS = """
query PullRequestReviewComments($owner: String!, $name: String!, $number: Int!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      reviewThreads(first: 25, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          comments(first: 100) {
            pageInfo { hasNextPage endCursor }
            nodes {
""" + COMMENT_FIELDS + """
              pullRequestReview { id }
            }
          }
        }
      }
    }
  }
}
""" + ACTOR_FRAGMENT

REVIEW_THREAD_COMMENTS = """
query ReviewThreadComments($id: ID!, $cursor: String) {
  node(id: $id) {
    ... on PullRequestReviewThread {
      comments(first: 100, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
""" + COMMENT_FIELDS + """
          pullRequestReview { id }
        }
      }
    }
  }
}
""" + ACTOR_FRAGMENT

DISCUSSION_COMMENTS = """
query DiscussionComments($owner: String!, $name: String!, $number: Int!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    discussion(number: $number) {
      comments(first: 50, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
""" + COMMENT_FIELDS + """
        }
      }
    }
  }
}
""" + ACTOR_FRAGMENT

NODE_BY_ID = """
query NodeById($id: ID!) {
  node(id: $id) {
    __typename
    ... on Issue { repository { id name nameWithOwner url isPrivate createdAt updatedAt owner { ...ActorFields } }
""" + ISSUE_FIELDS + """
    }
    ... on PullRequest { repository { id name nameWithOwner url isPrivate createdAt updatedAt owner { ...ActorFields } }
""" + PULL_REQUEST_FIELDS + """
    }
    ... on Discussion { repository { id name nameWithOwner url isPrivate createdAt updatedAt owner { ...ActorFields } }
""" + DISCUSSION_FIELDS + """
    }
  }
}
""" + ACTOR_FRAGMENT
