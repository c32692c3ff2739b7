"""Heuristic pattern extractor for transaction rows in a rendered page.

Works on the final page HTML (parsed with BeautifulSoup):

1. every element with at least three element children is a candidate container
2. each child is scored for transaction likelihood (money/date tokens, class hints)
3. a container is a pattern when its first child scores high enough and the
   children's scores have low variance (siblings share a template)
4. the most confident pattern wins and each of its children becomes a row

Best-effort by nature: markup that does not look like the patterns above yields
no rows rather than wrong ones.
"""

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from .models import ExtractedRow

logger = logging.getLogger(__name__)

EXTRACTION_METHOD = "pattern"

MIN_CHILDREN = 3
MIN_FIRST_CHILD_SCORE = 20
MIN_MEAN_SCORE = 20
MAX_VARIANCE = 100

_SKIP_TAGS = frozenset({"script", "style", "noscript", "template", "head", "meta", "link"})

# Scoring
_MONEY_SCORE_RE = re.compile(r"\$?\d+\.\d{2}")
_CLASS_BONUSES = (
    (("transaction",), 20),
    (("activity",), 15),
    (("payment",), 15),
    (("amount", "debit", "credit"), 10),
    (("row",), 5),
    (("item",), 5),
)

# Classification
_DATE_RES = (
    re.compile(r"\b\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}\b"),
    re.compile(r"\b\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2}\b"),
    re.compile(r"\b(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}\b", re.IGNORECASE),
    re.compile(r"\b\d{1,2}\s+(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?,?\s+\d{4}\b", re.IGNORECASE),
)
_MONEY_RE = re.compile(r"[-−]?\(?[-−]?\$?\s?(?:\d{1,3}(?:,\d{3})+|\d+)\.\d{2}\)?|[-−]?\(?\$\s?(?:\d{1,3}(?:,\d{3})+|\d+)\)?")
_DESCRIPTION_NOISE_RES = (
    re.compile(r",?\s*opens popup.*$", re.IGNORECASE),
    re.compile(r"\s*help text.*$", re.IGNORECASE),
    re.compile(r",\s*category.*$", re.IGNORECASE),
)
_STATUS_WORDS = frozenset({"pending", "posted", "status", "category", "completed"})


@dataclass
class Pattern:
    """A container whose children look like repeating transaction rows."""

    container: Tag
    elements: list[Tag]
    scores: list[float]
    mean: float
    variance: float

    @property
    def confidence(self) -> float:
        return min(100.0, self.mean + (100.0 - self.variance))


def _visible_strings(element: Tag) -> Iterator[str]:
    for node in element.find_all(string=True):
        if isinstance(node, Comment):
            continue
        hidden = False
        for parent in node.parents:
            if parent is element.parent:
                break
            if parent.name in _SKIP_TAGS or parent.get("aria-hidden") == "true" or parent.has_attr("hidden"):
                hidden = True
                break
        if hidden:
            continue
        text = " ".join(str(node).split())
        if text:
            yield text


def visible_text(element: Tag) -> str:
    return " ".join(_visible_strings(element))


def _element_children(element: Tag) -> list[Tag]:
    return [child for child in element.children if isinstance(child, Tag) and child.name not in _SKIP_TAGS]


def _class_and_id(element: Tag) -> str:
    classes = element.get("class") or []
    if isinstance(classes, str):
        classes = [classes]
    return " ".join([*classes, element.get("id") or ""]).lower()


def find_date(text: str) -> str | None:
    for pattern in _DATE_RES:
        match = pattern.search(text)
        if match:
            return match.group(0).strip()
    return None


def normalize_amount(token: str) -> str:
    """'$1,234.56' -> '1234.56'; '(45.00)' and '-$45.00' -> '-45.00'."""
    negative = "-" in token or "−" in token or "(" in token
    digits = re.sub(r"[^\d.]", "", token)
    return f"-{digits}" if negative and digits else digits


def score_element(element: Tag) -> float:
    """Transaction-likelihood score of a single element."""
    text = visible_text(element)
    score = 0.0

    money_tokens = _MONEY_SCORE_RE.findall(text)
    score += 10 * len(money_tokens)
    if len(money_tokens) >= 2:
        score += 5

    if find_date(text):
        score += 15

    hints = _class_and_id(element)
    for keywords, bonus in _CLASS_BONUSES:
        if any(keyword in hints for keyword in keywords):
            score += bonus

    child_count = len(_element_children(element))
    if 3 <= child_count <= 10:
        score += 10

    return score


def _clean_description(text: str) -> str:
    cleaned = text
    for pattern in _DESCRIPTION_NOISE_RES:
        cleaned = pattern.sub("", cleaned)
    return " ".join(cleaned.split()).strip(" ,;-")


@dataclass
class _RowParts:
    dates: list[str]
    amounts: list[str]
    balances: list[str]
    descriptions: list[str]
    category: str | None = None
    status: str | None = None

    def add_text(self, text: str, hints: str) -> None:
        if "category" in hints:
            self.category = self.category or text
            return

        remaining = text
        date = find_date(remaining)
        if date:
            self.dates.append(date)
            remaining = remaining.replace(date, " ")

        monies = _MONEY_RE.findall(remaining)
        is_balance = "balance" in hints or "total" in hints
        for token in monies:
            remaining = remaining.replace(token, " ", 1)
            (self.balances if is_balance else self.amounts).append(normalize_amount(token))

        description = _clean_description(remaining)
        if not description:
            return
        if description.lower() in _STATUS_WORDS:
            self.status = self.status or description.lower()
            return
        if 3 <= len(description) < 200:
            self.descriptions.append(description)


class PatternExtractor:
    """Finds the most transaction-like repeating structure and extracts its rows."""

    def extract(self, html: str) -> list[ExtractedRow]:
        """Extract transaction rows from page HTML.

        Args:
            html: Final page HTML after playback

        Returns:
            Deduplicated rows, pending transactions excluded
        """
        soup = BeautifulSoup(html, "html.parser")
        patterns = self.find_patterns(soup)
        if not patterns:
            logger.info("No transaction patterns detected")
            return []

        best = patterns[0]
        logger.info(
            f"Best pattern: <{best.container.name}> with {len(best.elements)} rows, "
            f"confidence {best.confidence:.1f}, mean score {best.mean:.1f}"
        )

        rows: list[ExtractedRow] = []
        seen: set[tuple[str, str, str]] = set()
        for element, score in zip(best.elements, best.scores):
            row, pending = self.extract_row(element, score)
            if not row.date and not row.amount:
                logger.debug(f"Dropping row without date or amount: {row.description!r}")
                continue
            if pending:
                logger.debug(f"Skipping pending transaction: {row.description!r}")
                continue
            key = row.dedupe_key()
            if key in seen:
                continue
            seen.add(key)
            rows.append(row)

        logger.info(f"Extracted {len(rows)} rows out of {len(best.elements)} candidates")
        return rows

    def find_patterns(self, soup: BeautifulSoup) -> list[Pattern]:
        """All qualifying containers, most confident first (ties keep document order)."""
        patterns: list[Pattern] = []
        for container in soup.find_all(True):
            if container.name in _SKIP_TAGS:
                continue
            children = _element_children(container)
            if len(children) < MIN_CHILDREN:
                continue

            scores = [score_element(child) for child in children]
            if scores[0] < MIN_FIRST_CHILD_SCORE:
                continue

            mean = sum(scores) / len(scores)
            variance = sum((s - mean) ** 2 for s in scores) / len(scores)
            if variance >= MAX_VARIANCE or mean < MIN_MEAN_SCORE:
                continue

            patterns.append(Pattern(container=container, elements=children, scores=scores, mean=mean, variance=variance))

        patterns.sort(key=lambda p: p.confidence, reverse=True)
        return patterns

    def extract_row(self, element: Tag, score: float) -> tuple[ExtractedRow, bool]:
        """Extract one row.

        Returns:
            The row and whether it is a pending transaction
        """
        parts = _RowParts(dates=[], amounts=[], balances=[], descriptions=[])

        cells = [child for child in _element_children(element) if child.name in ("td", "th")]
        if cells:
            for cell in cells:
                text = visible_text(cell)
                if text:
                    parts.add_text(text, _class_and_id(cell))
        else:
            seen_texts: set[str] = set()
            for node in element.find_all(string=True):
                if not isinstance(node, NavigableString) or isinstance(node, Comment):
                    continue
                parent = node.parent
                if parent is None or parent.name in _SKIP_TAGS or parent.get("aria-hidden") == "true" or parent.has_attr("hidden"):
                    continue
                text = " ".join(str(node).split())
                if not text or text in seen_texts:
                    continue
                seen_texts.add(text)
                parts.add_text(text, _class_and_id(parent))
            # Without per-cell hints the second amount of a row is its running balance
            if not parts.balances and len(parts.amounts) >= 2:
                parts.balances.append(parts.amounts.pop(1))

        descriptions = parts.descriptions
        description = next((d for d in descriptions if len(d) > 5), descriptions[0] if descriptions else "")
        row = ExtractedRow(
            date=parts.dates[0] if parts.dates else "",
            description=description,
            amount=parts.amounts[0] if parts.amounts else "",
            balance=parts.balances[-1] if parts.balances else None,
            category=parts.category,
            confidence_score=min(100.0, score),
        )
        pending = (
            "pending" in row.description.lower()
            or "pending" in (row.category or "").lower()
            or parts.status == "pending"
        )
        return row, pending


def extract(html: str) -> list[ExtractedRow]:
    """Module-level shortcut for PatternExtractor().extract(html)."""
    return PatternExtractor().extract(html)
