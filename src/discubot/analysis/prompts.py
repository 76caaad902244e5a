"""LLM prompt templates for discussion analysis.

Two calls per discussion:
  - Summary (summary + key points)
  - Task detection (structured task list with optional domain labels)
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

SUMMARY_SYSTEM = """\
You summarise team discussions from collaboration tools.  Be factual and
brief.  Never invent decisions or key points that were not stated.
Return ONLY valid JSON. No markdown, no explanation."""

SUMMARY_USER = """\
{instructions}
{source_context}
Discussion:
\"\"\"
{text}
\"\"\"

{domain_instructions}

Respond in JSON format:
{{
  "summary": "2-3 sentence summary",
  "keyPoints": ["..."] or [],
  "domain": "domain-name" | null
}}"""

DEFAULT_SUMMARY_INSTRUCTIONS = """\
Analyze this discussion and provide:
1. A concise summary (2-3 sentences)
2. Key points or decisions, ONLY if meaningful ones exist (empty array otherwise)
3. The primary domain of the discussion"""

# ---------------------------------------------------------------------------
# Task detection
# ---------------------------------------------------------------------------

TASK_SYSTEM = """\
You extract actionable tasks from team discussions.  Only extract work that
participants actually asked for.  When unsure about an optional field,
return null for it rather than guessing.
Return ONLY valid JSON. No markdown, no explanation."""

TASK_USER = """\
Identify the distinct, actionable tasks in this discussion.

<discussion>
{text}
</discussion>
{custom_instructions}
Rules:
- Extract at most {max_tasks} tasks; return an empty list if there are none.
- Set isMultiTask to true when two or more distinct tasks exist.
- actionItems: only steps explicitly mentioned in the discussion, otherwise null.
- priority: "low" | "medium" | "high" | "urgent" | null
- type: "bug" | "feature" | "question" | "improvement" | null
- dueDate: "YYYY-MM-DD" only if explicitly mentioned, otherwise null.
- tags: short keywords if clearly relevant, otherwise null.
{domain_instructions}

Respond with ONLY valid JSON in this exact format:
{{
  "isMultiTask": true | false,
  "tasks": [
    {{
      "title": "Concise task title (5-10 words)",
      "description": "What needs to be done (1-2 sentences)",
      "actionItems": ["Step 1", "Step 2"] | null,
      "priority": "low" | "medium" | "high" | "urgent" | null,
      "type": "bug" | "feature" | "question" | "improvement" | null,
      "assignee": "user id" | null,
      "dueDate": "YYYY-MM-DD" | null,
      "tags": ["tag"] | null,
      "domain": "domain-name" | null
    }}
  ],
  "confidence": 0.0-1.0
}}"""


def domain_instructions(available_domains: list[str], *, per_task: bool) -> str:
    subject = "each task" if per_task else "the discussion"
    if available_domains:
        return (
            f"- domain: the domain of {subject}, chosen ONLY from: "
            f"{', '.join(available_domains)}. Use null if uncertain or if it spans "
            "several domains."
        )
    return f"- domain: null for {subject}; no domain vocabulary is configured."


def build_summary_prompt(
    text: str,
    *,
    source_type: str | None = None,
    custom_prompt: str | None = None,
    available_domains: list[str] | None = None,
) -> str:
    source_context = f"Context: this discussion comes from {source_type}.\n" if source_type else ""
    return SUMMARY_USER.format(
        instructions=custom_prompt or DEFAULT_SUMMARY_INSTRUCTIONS,
        source_context=source_context,
        text=text,
        domain_instructions=domain_instructions(available_domains or [], per_task=False),
    )


def build_task_prompt(
    text: str,
    *,
    max_tasks: int,
    custom_prompt: str | None = None,
    available_domains: list[str] | None = None,
) -> str:
    custom = (
        f"\n<custom_instructions>\n{custom_prompt}\n</custom_instructions>\n"
        if custom_prompt
        else ""
    )
    return TASK_USER.format(
        text=text,
        custom_instructions=custom,
        max_tasks=max_tasks,
        domain_instructions=domain_instructions(available_domains or [], per_task=True),
    )
