"""Issue domain detection and the parallel-safety table.

Two slots may run at the same time only when their domains form one of
the pairs in SAFE_PARALLEL_PAIRS. Anything unclassified runs alone.
"""

import re
from typing import Protocol


BACKEND = "backend"
FRONTEND = "frontend"
DATABASE = "database"
INFRASTRUCTURE = "infrastructure"
SECURITY = "security"
TESTING = "testing"
DOCUMENTATION = "documentation"
BILLING = "billing"
UNKNOWN = "unknown"

DOMAINS = (BACKEND, FRONTEND, DATABASE, INFRASTRUCTURE, SECURITY, TESTING, DOCUMENTATION, BILLING)

DOMAIN_TITLE_TAGS = {
    "[Backend]": BACKEND,
    "[Frontend]": FRONTEND,
    "[Database]": DATABASE,
    "[Infra]": INFRASTRUCTURE,
    "[Security]": SECURITY,
    "[Tests]": TESTING,
    "[Docs]": DOCUMENTATION,
    "[Billing]": BILLING,
}

SAFE_PARALLEL_PAIRS = frozenset(
    frozenset(pair)
    for pair in [
        (BACKEND, FRONTEND),
        (BACKEND, DOCUMENTATION),
        (FRONTEND, DOCUMENTATION),
        (TESTING, DOCUMENTATION),
        (BACKEND, TESTING),
        (FRONTEND, TESTING),
    ]
)

# Checked in this order; the first domain with a hit wins
PATH_PATTERNS = {
    BACKEND: [r"^src/(api|server|lib|core|services|actions)/", r"\.controller\.", r"\.service\."],
    FRONTEND: [r"^src/(ui|components|pages|views|hooks)/", r"\.tsx$", r"\.css$", r"\.scss$"],
    DATABASE: [r"^src/db/", r"migration", r"schema\.ts$", r"drizzle"],
    INFRASTRUCTURE: [r"^\.github/", r"docker", r"^infra/", r"\.yml$", r"Dockerfile"],
    SECURITY: [r"auth", r"security", r"middleware/auth", r"\.env"],
    TESTING: [r"\.test\.", r"\.spec\.", r"^test/", r"vitest", r"jest"],
    DOCUMENTATION: [r"\.md$", r"^docs/", r"README"],
    BILLING: [r"billing", r"stripe", r"payment", r"subscription"],
}

KEYWORD_PATTERNS = {
    BACKEND: r"\b(api|endpoint|server|route|controller|service|middleware)\b",
    FRONTEND: r"\b(ui|component|page|view|react|css|layout|button|form|modal)\b",
    DATABASE: r"\b(schema|migration|table|column|index|query|database|db)\b",
    INFRASTRUCTURE: r"\b(deploy|docker|ci|cd|pipeline|github.actions|terraform|k8s)\b",
    SECURITY: r"\b(auth|security|permission|token|jwt|oauth|csrf|xss)\b",
    TESTING: r"\b(test|spec|coverage|vitest|jest|unit.test|e2e|integration)\b",
    DOCUMENTATION: r"\b(docs|readme|documentation|guide|tutorial|changelog)\b",
    BILLING: r"\b(billing|stripe|payment|subscription|invoice|pricing)\b",
}

_PATH_RES = {domain: [re.compile(p) for p in patterns] for domain, patterns in PATH_PATTERNS.items()}
_KEYWORD_RES = {domain: re.compile(p, re.IGNORECASE) for domain, p in KEYWORD_PATTERNS.items()}


class _IssueLike(Protocol):
    title: str
    body: str
    labels: list[str]


def detect_domain(issue: _IssueLike) -> str:
    """Classify an issue by title tag, then label, then body paths, then keywords."""
    for tag, domain in DOMAIN_TITLE_TAGS.items():
        if issue.title.startswith(tag):
            return domain

    for label in issue.labels:
        if label.lower() in DOMAINS:
            return label.lower()

    body = issue.body or ""
    for line in body.splitlines():
        for domain, patterns in _PATH_RES.items():
            if any(p.search(line) for p in patterns):
                return domain

    text = f"{issue.title} {body}"
    for domain, pattern in _KEYWORD_RES.items():
        if pattern.search(text):
            return domain

    return UNKNOWN


def can_run_parallel(a: str, b: str) -> bool:
    """Whether two domains may occupy slots at the same time."""
    if a == UNKNOWN or b == UNKNOWN or a == b:
        return False
    return frozenset((a, b)) in SAFE_PARALLEL_PAIRS


def slugify(title: str) -> str:
    """Branch-safe slug from an issue title, without its domain tag."""
    cleaned = title
    for tag in DOMAIN_TITLE_TAGS:
        if cleaned.startswith(tag):
            cleaned = cleaned[len(tag):].strip()
            break
    slug = re.sub(r"[^a-z0-9]+", "-", cleaned.lower()).strip("-")[:50]
    return slug or "task"
