"""Batch classification of unanswered mentions with Claude.

Each candidate mention is asked one question: does it expect a response or is
it informational? Verdicts are cached per (comment, mentioned user) and only
re-evaluated when the comment body or the prompt version changes.
"""

import os
os.environ.pop("CLAUDECODE", None)  # Allow nested Claude SDK calls

import json
import logging
import re

from claude_agent_sdk import (
    ClaudeSDKClient,
    ClaudeAgentOptions,
    AssistantMessage,
    ResultMessage,
    TextBlock,
)

import attention
import database as db
import mention_store
from config import settings
from timestamps import now_iso

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 20
MAX_COMMENT_CHARS = 1500
MENTION_CONTEXT_RADIUS = MAX_COMMENT_CHARS // 2

SYSTEM_PROMPT = (
    "You are a GitHub assistant. For each comment, determine whether a user mention is asking "
    "for a response or is simply a reference or courtesy. The comment may be written in English "
    'or Korean. Respond with only "Yes" or "No".'
)


class ClassifierError(Exception):
    pass


def truncate_comment_body(body: str) -> str:
    """Keep at most MAX_COMMENT_CHARS, centered on the first mention."""
    if len(body) <= MAX_COMMENT_CHARS:
        return body
    match = attention.MENTION_PATTERN.search(body)
    if match is None:
        return body[:MAX_COMMENT_CHARS - 3] + "..."
    start = max(0, match.start() - MENTION_CONTEXT_RADIUS)
    end = min(len(body), match.start() + MENTION_CONTEXT_RADIUS)
    shortfall = MAX_COMMENT_CHARS - (end - start)
    if shortfall > 0:
        start = max(0, start - shortfall // 2)
        end = min(len(body), end + (shortfall - shortfall // 2))
    snippet = body[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(body):
        snippet = snippet + "..."
    if len(snippet) > MAX_COMMENT_CHARS:
        snippet = snippet[:MAX_COMMENT_CHARS - 3] + "..."
    return snippet


def build_batch_prompt(candidates: list[dict]) -> str:
    header = [
        f"There are {len(candidates)} GitHub comments.",
        "For each numbered item decide if the mention expects a response (Yes) or is informational (No).",
        'Respond with a JSON array of "Yes" or "No" strings in matching order.',
        "Only output the JSON array.",
        "Comments:",
    ]
    body = "\n\n".join(
        f"{i + 1}. Mentioned user: {c.get('mentioned_login') or '(unknown)'}\n"
        f'Comment: """{truncate_comment_body(c["body"])}"""'
        for i, c in enumerate(candidates)
    )
    return "\n".join(header) + "\n\n" + body


def parse_batch_response(text: str, expected: int) -> list[bool]:
    match = re.search(r"\[.*\]", text, re.DOTALL)
    if not match:
        raise ClassifierError("JSON array not found in classifier response")
    try:
        answers = json.loads(match.group())
    except json.JSONDecodeError as e:
        raise ClassifierError(f"Classifier returned invalid JSON: {e}") from e
    if not isinstance(answers, list) or len(answers) != expected:
        raise ClassifierError(f"Expected {expected} answers, got {len(answers) if isinstance(answers, list) else 0}")
    verdicts = []
    for answer in answers:
        if isinstance(answer, bool):
            verdicts.append(answer)
        else:
            verdicts.append(str(answer or "").strip().lower().startswith("y"))
    return verdicts


async def _run_classifier(prompt: str, model: str) -> str:
    """Send one batch prompt and collect the text reply."""
    options = ClaudeAgentOptions(
        system_prompt=SYSTEM_PROMPT,
        model=model,
        mcp_servers={},
        allowed_tools=[],
        permission_mode="bypassPermissions",
        max_turns=1,
    )

    result_text = []
    client = ClaudeSDKClient(options=options)
    await client.connect()
    try:
        await client.query(prompt)
        async for message in client.receive_response():
            if isinstance(message, ResultMessage) and message.is_error:
                raise ClassifierError(f"Classifier error: {message.result}")
            elif isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock):
                        result_text.append(block.text)
    finally:
        await client.disconnect()

    return "\n".join(result_text)


async def classify_unanswered_mentions(*, force: bool = False, model: str | None = None) -> dict:
    """Evaluate every open mention candidate that has no current verdict."""
    model = (model or settings.MENTION_CLASSIFIER_MODEL).strip()
    summary = {
        "status": "completed", "total_candidates": 0, "attempted": 0, "updated": 0,
        "unchanged": 0, "requires_response": 0, "not_requiring_response": 0, "errors": 0,
    }
    if not settings.ANTHROPIC_API_KEY:
        logger.info("ANTHROPIC_API_KEY not set; skipping mention classification")
        return {**summary, "status": "skipped", "message": "ANTHROPIC_API_KEY is not configured."}

    config = await db.get_sync_config()
    ctx = attention.AttentionContext(config)
    data = await attention.collect_attention_data(ctx)
    candidates = attention.find_mention_candidates(
        data["comments"], data["items_by_id"], data["index"], data["login_index"], ctx,
    )
    summary["total_candidates"] = len(candidates)
    records = await mention_store.get_classifications([(c["comment_id"], c["mentioned_user_id"]) for c in candidates])

    pending = []
    for candidate in candidates:
        key = mention_store.classification_key(candidate["comment_id"], candidate["mentioned_user_id"])
        if mention_store.needs_evaluation(records.get(key), candidate["body_hash"], force):
            pending.append(candidate)
        else:
            summary["unchanged"] += 1

    for start in range(0, len(pending), MAX_BATCH_SIZE):
        batch = pending[start:start + MAX_BATCH_SIZE]
        summary["attempted"] += len(batch)
        try:
            reply = await _run_classifier(build_batch_prompt(batch), model)
            verdicts = parse_batch_response(reply, len(batch))
        except Exception as e:
            logger.warning(f"Mention classification batch {start // MAX_BATCH_SIZE + 1} failed: {e}")
            summary["errors"] += len(batch)
            continue

        evaluated_at = now_iso()
        for candidate, requires_response in zip(batch, verdicts):
            await mention_store.upsert_classification(
                candidate["comment_id"], candidate["mentioned_user_id"],
                body_hash=candidate["body_hash"], requires_response=requires_response,
                model=model, raw_response={"reply": reply}, evaluated_at=evaluated_at,
            )
            summary["updated"] += 1
            summary["requires_response" if requires_response else "not_requiring_response"] += 1

    logger.info(
        f"Mention classification: {summary['updated']} updated, {summary['unchanged']} unchanged, "
        f"{summary['errors']} errors of {summary['total_candidates']} candidates"
    )
    return summary
