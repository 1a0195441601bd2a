"""Prompt templates for the built-in one-shot queries."""
from __future__ import annotations

TITLE_SYSTEM_PROMPT = """\
You write titles for software features. Given a feature description, \
reply with a concise, descriptive title of 5 to 10 words.

Rules:
- Output ONLY the title, nothing else
- Make it short and action-oriented ("Add dark mode toggle", "Fix login validation")
- Start with a verb when possible (Add, Fix, Update, Implement, Create)
- No quotes, no trailing period, no formatting
- Capture what the feature does so it can be scanned on a board"""

ENHANCEMENT_MODES: tuple[str, ...] = (
    "improve",
    "technical",
    "simplify",
    "acceptance",
    "ux-reviewer",
)
DEFAULT_ENHANCEMENT_MODE = "improve"

_ENHANCEMENT_SYSTEM_PROMPTS: dict[str, str] = {
    "improve": """\
You improve task descriptions written for a coding agent. Rewrite the text \
so it is clear, specific and complete: state the goal, the expected \
behaviour and any constraints. Keep the author's intent and scope. \
Output only the rewritten description.""",
    "technical": """\
You are a senior engineer adding technical detail to a task description. \
Name the likely components, data flows, edge cases and error handling the \
implementation must cover. Do not invent requirements that contradict the \
text. Output only the expanded description.""",
    "simplify": """\
You simplify task descriptions. Remove filler, repetition and speculation \
while keeping every actual requirement. Prefer short sentences and plain \
words. Output only the simplified description.""",
    "acceptance": """\
You turn task descriptions into testable work items. Keep the original \
description, then append a section "Acceptance criteria" with numbered, \
observable, pass/fail criteria. Output only the result.""",
    "ux-reviewer": """\
You review task descriptions from a user-experience angle. Rewrite the \
description so it covers the user's goal, the interaction flow, empty, \
loading and error states, and accessibility. Output only the rewritten \
description.""",
}

_ENHANCEMENT_EXAMPLES: dict[str, tuple[str, str]] = {
    "improve": (
        "make login better",
        "Improve the login form: show inline validation for empty or malformed "
        "email and password fields, disable the submit button while a request "
        "is in flight, and display the server's error message when "
        "authentication fails.",
    ),
    "technical": (
        "add csv export to reports",
        "Add CSV export to the reports page. Add an export endpoint that streams "
        "the current report query as CSV (UTF-8, header row, RFC 4180 quoting). "
        "Reuse the existing report filters, cap exports at the same row limit as "
        "the UI, and return 400 for invalid filter parameters.",
    ),
    "simplify": (
        "So basically what we want, if possible, is for the app to maybe remember "
        "the last project the user had open so that when they come back it opens "
        "that one again instead of the default, I think that would be nice.",
        "Reopen the last opened project on startup instead of the default one.",
    ),
    "acceptance": (
        "Users can reset their password by email.",
        "Users can reset their password by email.\n\nAcceptance criteria:\n"
        "1. The login page links to a password reset form.\n"
        "2. Submitting a registered email sends a reset link within one minute.\n"
        "3. The link expires after 30 minutes and works only once.\n"
        "4. Submitting an unknown email shows the same confirmation message.",
    ),
    "ux-reviewer": (
        "show notifications",
        "Show in-app notifications in a panel opened from a bell icon in the "
        "header. The icon shows an unread count. The panel lists newest first, "
        "marks items read when opened, shows a friendly empty state and a retry "
        "action when loading fails, and is fully keyboard accessible.",
    ),
}


def normalize_enhancement_mode(mode: str | None) -> str:
    """Unknown or missing modes fall back to ``improve``."""
    normalized = (mode or "").strip().lower()
    return normalized if normalized in ENHANCEMENT_MODES else DEFAULT_ENHANCEMENT_MODE


def enhancement_system_prompt(mode: str) -> str:
    return _ENHANCEMENT_SYSTEM_PROMPTS[normalize_enhancement_mode(mode)]


def build_enhancement_prompt(mode: str, text: str, include_examples: bool = True) -> str:
    mode = normalize_enhancement_mode(mode)
    parts = []
    if include_examples:
        before, after = _ENHANCEMENT_EXAMPLES[mode]
        parts.append(f"Example input:\n{before}\n\nExample output:\n{after}")
    parts.append(f"Input:\n{text.strip()}\n\nOutput:")
    return "\n\n".join(parts)


def build_title_prompt(description: str) -> str:
    return f"Generate a concise title for this feature:\n\n{description.strip()}"
