"""
Response parser — turns the model's markdown into typed sections, findings,
alerts and recommendations.

Everything here is pure text processing. Finding and alert extraction is
lexical: bullets are classified by the words they contain, so results are
approximate. When a bullet carries negative markers it is an alert, even if
it also carries positive ones.
"""

import re
import unicodedata

from activity_insights.analysis.prompts import HEADING_MARKER
from activity_insights.schemas.analysis import AnalysisSection, ParsedAnalysis

MIN_SECTION_CONTENT = 20
MAX_FINDINGS = 5
MIN_FINDING_LENGTH = 20
MIN_RECOMMENDATION_LENGTH = 10
SUMMARY_SECTION_MIN = 50
SUMMARY_SECTION_MAX = 300
SUMMARY_PREFIX = 200

_SECTION_SPLIT_RE = re.compile(rf"(?=^{HEADING_MARKER}\s)", re.MULTILINE)
_TITLE_RE = re.compile(rf"^{HEADING_MARKER}\s+(.+)$", re.MULTILINE)

_TABLE_SEPARATOR_RE = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)+\|?\s*$", re.MULTILINE)
_NUMBERED_RE = re.compile(r"^\s*\d+[.)]\s+", re.MULTILINE)
_BULLET_RE = re.compile(r"^\s*[-*•]\s+", re.MULTILINE)

_BULLET_LINE_RE = re.compile(r"^\s*[-*•]\s+(.+)$", re.MULTILINE)
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")

_ACTION_RE = re.compile(
    r"^\s*(?:[-*•]\s*)?(?:\*\*|__)?\s*(?:suggested action|acci[oó]n sugerida)\s*:?\s*(?:\*\*|__)?\s*:?\s*(.+)$",
    re.IGNORECASE | re.MULTILINE,
)

POSITIVE_MARKERS = (
    r"\beffective", r"\badequate", r"\bmultiple\b", r"\bsuccessful", r"\bconsistent", r"\bstrong",
    r"\bactive\b", r"\btimely\b", r"\bon time\b", r"\bhigh participation\b",
    r"\befectiv", r"\badecuad", r"\bmúltiples\b", r"\bexitos", r"\bconstante", r"\bpuntual", r"\bactiv[oa]s?\b",
)
_POSITIVE_RE = re.compile("|".join(POSITIVE_MARKERS), re.IGNORECASE)
NEGATIVE_MARKERS = (
    r"\bno\b", r"\bnot\b", r"\bwithout\b", r"\blacks?\b", r"\blow\b", r"\blower\b", r"\bproblems?\b",
    r"\brisk", r"\bmissing\b", r"\binsufficient\b", r"\blate\b", r"\babsence\b", r"\bnone\b",
    r"\binactiv", r"\bdrop(?:s|ped)?\b", r"\bdeclin",
    r"\bsin\b", r"\bfalta", r"\bbaj[oa]s?\b", r"\bproblema", r"\briesgo", r"\bausencia\b",
    r"\binsuficiente", r"\bningún\b", r"\btard[ií]as?\b",
)
_NEGATIVE_RE = re.compile("|".join(NEGATIVE_MARKERS), re.IGNORECASE)

# Older response styles: emoji-prefixed or explicitly labeled lines
_LEGACY_POSITIVE_RE = re.compile(
    r"^\s*(?:[-*•]\s*)?(?:✅|👍|💪|🌟|(?:\*\*)?(?:finding|strength|hallazgo|fortaleza)s?(?:\*\*)?\s*:)\s*(.+)$",
    re.IGNORECASE | re.MULTILINE,
)
_LEGACY_ALERT_RE = re.compile(
    r"^\s*(?:[-*•]\s*)?(?:⚠️?|🚨|❗|❌|(?:\*\*)?(?:risk|alert|riesgo|alerta)s?(?:\*\*)?\s*:)\s*(.+)$",
    re.IGNORECASE | re.MULTILINE,
)


# ─────────────────────────────────────────────────────────────────────────────
# Sections
# ─────────────────────────────────────────────────────────────────────────────

def section_id(title: str) -> str:
    ascii_title = unicodedata.normalize("NFKD", title).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9\s-]", "", ascii_title.lower())
    slug = re.sub(r"[\s-]+", "-", slug).strip("-")
    return slug[:50] or "section"


def detect_format(content: str) -> str:
    """table > numbered-list > bullet-list > text."""
    if "|" in content and _TABLE_SEPARATOR_RE.search(content):
        return "table"
    if _NUMBERED_RE.search(content):
        return "numbered-list"
    if _BULLET_RE.search(content):
        return "bullet-list"
    return "text"


def parse_sections(markdown: str) -> list[AnalysisSection]:
    sections: list[AnalysisSection] = []
    seen: dict[str, int] = {}
    for block in _SECTION_SPLIT_RE.split(markdown):
        block = block.strip()
        title_match = _TITLE_RE.match(block)
        if not title_match:
            continue
        title = _strip_emphasis(title_match.group(1)).strip("[] ")
        content = block[title_match.end():].strip()
        if len(content) <= MIN_SECTION_CONTENT:
            continue

        sid = section_id(title)
        if sid in seen:
            seen[sid] += 1
            sid = f"{sid}-{seen[sid]}"
        else:
            seen[sid] = 1

        sections.append(AnalysisSection(id=sid, title=title, content=content, format=detect_format(content)))
    return sections


# ─────────────────────────────────────────────────────────────────────────────
# Findings, alerts, recommendations
# ─────────────────────────────────────────────────────────────────────────────

def _strip_emphasis(text: str) -> str:
    return re.sub(r"(\*\*|__)", "", text).strip()


def _is_action_line(line: str) -> bool:
    return bool(_ACTION_RE.match(line))


def is_negative(text: str) -> bool:
    return bool(_NEGATIVE_RE.search(text))


def is_positive(text: str) -> bool:
    return bool(_POSITIVE_RE.search(text)) and not is_negative(text)


def classify_findings(markdown: str) -> tuple[list[str], list[str]]:
    """Positive findings and alerts from bold-carrying bullets, with the legacy fallback."""
    positives: list[str] = []
    alerts: list[str] = []

    for match in _BULLET_LINE_RE.finditer(markdown):
        line = match.group(1).strip()
        if _is_action_line(line) or not _BOLD_RE.search(line):
            continue
        text = _strip_emphasis(line)
        if len(text) < MIN_FINDING_LENGTH:
            continue
        if is_negative(text):
            alerts.append(text)
        elif is_positive(text):
            positives.append(text)

    if not positives and not alerts:
        positives, alerts = _legacy_findings(markdown)

    return positives[:MAX_FINDINGS], alerts[:MAX_FINDINGS]


def _legacy_findings(markdown: str) -> tuple[list[str], list[str]]:
    positives: list[str] = []
    alerts: list[str] = []

    for match in _LEGACY_ALERT_RE.finditer(markdown):
        text = _strip_emphasis(match.group(1))
        if text:
            alerts.append(text)

    for match in _LEGACY_POSITIVE_RE.finditer(markdown):
        text = _strip_emphasis(match.group(1))
        if not text:
            continue
        if is_negative(text):
            alerts.append(text)
        else:
            positives.append(text)

    return positives, alerts


def extract_recommendations(markdown: str) -> list[str]:
    recommendations = []
    for match in _ACTION_RE.finditer(markdown):
        text = _strip_emphasis(match.group(1))
        if len(text) > MIN_RECOMMENDATION_LENGTH:
            recommendations.append(text)
    return recommendations


def extract_summary(markdown: str, sections: list[AnalysisSection]) -> str:
    if sections and len(sections[0].content) > SUMMARY_SECTION_MIN:
        content = sections[0].content
        return content[:SUMMARY_SECTION_MAX] + ("..." if len(content) > SUMMARY_SECTION_MAX else "")
    text = markdown.strip()
    return text[:SUMMARY_PREFIX] + ("..." if len(text) > SUMMARY_PREFIX else "")


def parse_analysis(markdown: str) -> ParsedAnalysis:
    sections = parse_sections(markdown)
    insights, alerts = classify_findings(markdown)
    return ParsedAnalysis(
        full_text=markdown,
        summary=extract_summary(markdown, sections),
        sections=sections,
        insights=insights,
        alerts=alerts,
        recommendations=extract_recommendations(markdown),
    )
