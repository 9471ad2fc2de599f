"""Builds the instructions handed to an engine for one issue."""

import re

from .domain import (
    BACKEND,
    BILLING,
    DATABASE,
    DOCUMENTATION,
    FRONTEND,
    INFRASTRUCTURE,
    SECURITY,
    TESTING,
)
from .github import Issue

MAX_TITLE_CHARS = 500
MAX_BODY_CHARS = 50_000
MAX_LESSONS_CHARS = 10_000
MAX_PROMPT_CHARS = 100_000

SCOPE_RULES = {
    BACKEND: [
        "You are working on BACKEND code.",
        "Focus on: src/api/, src/server/, src/lib/, src/core/, src/services/",
        "Avoid modifying: UI components, CSS, frontend-specific files",
    ],
    FRONTEND: [
        "You are working on FRONTEND code.",
        "Focus on: src/ui/, src/components/, src/pages/, src/views/, src/hooks/",
        "Avoid modifying: API routes, server-side code, database schemas",
    ],
    DATABASE: [
        "You are working on DATABASE code.",
        "Focus on: src/db/, migrations, schema files",
        "CRITICAL: Only create migration files, never run them directly",
    ],
    INFRASTRUCTURE: [
        "You are working on INFRASTRUCTURE code.",
        "Focus on: .github/, Docker files, deployment configs, CI/CD",
        "Avoid modifying: Application source code",
    ],
    SECURITY: [
        "You are working on SECURITY code.",
        "Focus on: Authentication, authorization, middleware, security configs",
        "Security changes need thorough review; keep them minimal and explicit",
    ],
    TESTING: [
        "You are working on TESTS.",
        "Focus on: Test files, test utilities, test configuration",
        "Avoid modifying: Production source code (unless fixing what you're testing)",
    ],
    DOCUMENTATION: [
        "You are working on DOCUMENTATION.",
        "Focus on: .md files, docs/, README, comments",
        "Avoid modifying: Source code",
    ],
    BILLING: [
        "You are working on BILLING code.",
        "Focus on: Payment integrations, subscription logic, invoicing",
        "Billing bugs cost real money; double-check amounts and currency handling",
    ],
}

UNKNOWN_SCOPE_RULES = [
    "Domain not detected. Exercise broad caution.",
    "Try to keep changes focused and minimal.",
]

_CODE_BLOCK_RE = re.compile(r"```.*?```", re.DOTALL)
_HTML_TAG_RE = re.compile(r"</?[^>]+(>|$)")


def sanitize_title(text: str) -> str:
    """Strip code blocks and HTML tags from a title and cap its length."""
    text = _CODE_BLOCK_RE.sub("[code block]", text)
    text = _HTML_TAG_RE.sub("", text)
    return text[:MAX_TITLE_CHARS]


def limit_size(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "\n\n[Content truncated due to size]"


def build_engineer_prompt(
    issue: Issue,
    domain: str,
    repo: str,
    lessons: str | None = None,
) -> str:
    """Assemble the full prompt for one slot attempt."""
    process = [
        "1. Read and understand the full specification above",
        "2. Explore the codebase to understand existing patterns and conventions",
        "3. Implement the changes described in the specification",
        "4. Run any existing tests to verify your changes don't break anything",
        "5. If tests exist for the area you changed, run them specifically",
        f"6. Commit your changes with a descriptive message referencing #{issue.number}",
        "",
        "IMPORTANT:",
        "- Follow existing code patterns and conventions in this repository",
        "- Do NOT modify files outside your domain scope unless absolutely necessary",
        "- If you encounter a blocker, describe it clearly in your output",
        "- Do NOT push to remote; slotrunner handles branch management",
    ]

    sections = [
        f"# Task: {sanitize_title(issue.title)}",
        f"Issue #{issue.number} in {repo}" if repo else f"Issue #{issue.number}",
        "",
        "## Specification",
        limit_size(issue.body or "", MAX_BODY_CHARS),
        "",
        "## Scope Rules",
        "\n".join(SCOPE_RULES.get(domain, UNKNOWN_SCOPE_RULES)),
        "",
        "## Process",
        "\n".join(process),
        "",
        "## Commit Message Format",
        f"Use: `<type>(<scope>): <description> (#{issue.number})`",
        "Types: feat, fix, refactor, test, docs, chore",
        "",
    ]

    if lessons:
        sections.extend([
            "## Lessons from Previous Runs",
            limit_size(lessons, MAX_LESSONS_CHARS),
            "",
        ])

    prompt = "\n".join(sections)
    if len(prompt) > MAX_PROMPT_CHARS:
        return prompt[:MAX_PROMPT_CHARS] + "\n\n[Prompt truncated due to size]"
    return prompt
