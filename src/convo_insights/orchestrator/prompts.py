"""Prompt templates and response schemas for each analysis type."""

from __future__ import annotations

from typing import Any

from convo_insights.orchestrator.models import AnalysisType

_OUTPUT_RULES = """
Output rules:
- Respond with JSON only. No prose, no markdown fences.
- Return a JSON array with exactly one object per entry in queueItems.
- Every object MUST include "queue_id" copied verbatim from queueItems[].queueId.
- Never invent queue ids. If a conversation has nothing worth reporting, still return
  its object with empty or low-confidence fields.
- Placeholders such as [EMAIL] or [API_KEY] are redactions; never try to restore them.
"""

WORKFLOW_PROMPT = """\
You classify what a developer was trying to get done in AI-assistant conversations.

For each conversation in the input data, identify:
- action: one verb describing the main task (e.g. review, fix, write, refactor, explain, prime)
- artifact: the main thing acted upon (e.g. pull request, unit tests, migration, README)
- domains: up to three short technology or topic tags
- confidence: 0.0 to 1.0
- reasoning: one sentence grounded in the conversation
""" + _OUTPUT_RULES

LEARNING_PROMPT = """\
You extract durable user preferences and corrections from AI-assistant conversations.

A learning is a rule the assistant should follow next time, stated by the user
explicitly ("always use pytest") or implied by a correction ("no, use tabs").

For each conversation in the input data return a "learnings" array. Each learning has:
- type: "correction", "positive" or "implicit"
- rule: an imperative sentence the assistant can follow
- confidence: 0.0 to 1.0
- pattern: short description of the trigger, optional
- message_id: id of the message that contains the evidence, optional
- context: when the rule applies, optional
- evidence: a short quote from the conversation, optional

Skip one-off task instructions that do not generalize.
""" + _OUTPUT_RULES

SUMMARY_PROMPT = """\
You write titles and summaries for AI-assistant conversations.

Only the first and last messages may be present. For each conversation return:
- suggested_title: at most 8 words, specific, no trailing punctuation
- suggested_summary: one or two sentences about what was asked and what was achieved
- confidence: 0.0 to 1.0
""" + _OUTPUT_RULES

DEDUPE_PROMPT = """\
You are given a list of extracted learnings (rules an assistant should follow).
Find groups of learnings that express the same rule in different words.

Respond with JSON only, shaped as {"merge_suggestions": [...]}. Each suggestion has:
- source_ids: ids of the learnings to merge (two or more)
- merged_rule: one clear rule that replaces them
- confidence: 0.0 to 1.0
- reasoning: one sentence

Return an empty merge_suggestions array when nothing should be merged.
"""

_CONFIDENCE = {"type": "number", "minimum": 0, "maximum": 1}

_ITEM_SCHEMAS: dict[AnalysisType, dict[str, Any]] = {
    AnalysisType.WORKFLOW: {
        "type": "object",
        "properties": {
            "queue_id": {"type": "string"},
            "action": {"type": "string"},
            "artifact": {"type": "string"},
            "domains": {"type": "array", "items": {"type": "string"}},
            "confidence": _CONFIDENCE,
            "reasoning": {"type": "string"},
        },
        "required": ["queue_id", "action", "artifact", "domains", "confidence"],
    },
    AnalysisType.LEARNING: {
        "type": "object",
        "properties": {
            "queue_id": {"type": "string"},
            "learnings": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "type": {"type": "string"},
                        "rule": {"type": "string"},
                        "confidence": _CONFIDENCE,
                        "pattern": {"type": "string"},
                        "message_id": {"type": "string"},
                        "context": {"type": "string"},
                        "evidence": {"type": "string"},
                    },
                    "required": ["type", "rule", "confidence"],
                },
            },
        },
        "required": ["queue_id", "learnings"],
    },
    AnalysisType.SUMMARY: {
        "type": "object",
        "properties": {
            "queue_id": {"type": "string"},
            "suggested_title": {"type": "string"},
            "suggested_summary": {"type": "string"},
            "confidence": _CONFIDENCE,
        },
        "required": ["queue_id", "suggested_title", "suggested_summary", "confidence"],
    },
}

DEDUPE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "merge_suggestions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "source_ids": {"type": "array", "items": {"type": "string"}},
                    "merged_rule": {"type": "string"},
                    "confidence": _CONFIDENCE,
                    "reasoning": {"type": "string"},
                },
                "required": ["source_ids", "merged_rule", "confidence"],
            },
        },
    },
    "required": ["merge_suggestions"],
}

_PROMPTS = {
    AnalysisType.WORKFLOW: WORKFLOW_PROMPT,
    AnalysisType.LEARNING: LEARNING_PROMPT,
    AnalysisType.SUMMARY: SUMMARY_PROMPT,
    AnalysisType.DEDUPE: DEDUPE_PROMPT,
}


def prompt_for(analysis_type: AnalysisType) -> str:
    return _PROMPTS[analysis_type]


def response_schema_for(analysis_type: AnalysisType) -> dict[str, Any]:
    """JSON schema of the full backend response for one batch."""

    if analysis_type is AnalysisType.DEDUPE:
        return DEDUPE_SCHEMA
    return {"type": "array", "items": _ITEM_SCHEMAS[analysis_type]}
