import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

SUFFICIENT = "sufficient"
NEEDS_MORE = "needsMore"
NEEDS_DEPTH = "needsDepth"
PENDING = "pending"

MIN_ITEMS_SUFFICIENT = 8
MIN_DOMAINS_SUFFICIENT = 3
MIN_SUPPORT_SUFFICIENT = 2
MIN_ITEMS_DEPTH = 4
MIN_DOMAINS_DEPTH = 2
MIN_QUOTES_DEPTH = 2
MAX_EXAMPLES_PER_ITEM = 3

_PUNCT_RE = re.compile(r"[`~!@#$%^&*()_+={}\[\]|\\:;\"'<>,.?/\-]")
_SPACE_RE = re.compile(r"\s+")


@dataclass
class ExtractedDoc:
    url: str
    title: str = ""
    facts: List[str] = field(default_factory=list)
    quotes: List[str] = field(default_factory=list)


@dataclass
class EvidenceSource:
    url: str
    title: str = ""
    weight: float = 1.0


@dataclass
class EvidenceItem:
    claim: str
    support_count: int = 1
    sources: List[EvidenceSource] = field(default_factory=list)
    examples: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Assessment:
    status: str
    reason: str


def normalize_claim(text: str) -> str:
    lowered = _PUNCT_RE.sub(" ", (text or "").lower())
    return _SPACE_RE.sub(" ", lowered).strip()


def build_evidence_items(
    extracted: List[ExtractedDoc],
    source_weight: Optional[Callable[[str], float]] = None,
) -> List[EvidenceItem]:
    items: Dict[str, EvidenceItem] = {}
    for doc in extracted:
        weight = source_weight(doc.url) if source_weight else 1.0
        src = EvidenceSource(url=doc.url, title=doc.title, weight=weight)
        for fact in doc.facts:
            key = normalize_claim(fact)
            if not key:
                continue
            existing = items.get(key)
            if existing:
                if not any(s.url == src.url for s in existing.sources):
                    existing.sources.append(src)
                existing.support_count += 1
            else:
                items[key] = EvidenceItem(claim=fact.strip(), sources=[src])
        # the doc's first quote illustrates its last fact
        if doc.quotes and doc.facts:
            item = items.get(normalize_claim(doc.facts[-1]))
            if item and len(item.examples) < MAX_EXAMPLES_PER_ITEM:
                item.examples.append(doc.quotes[0])
    return sorted(items.values(), key=lambda i: i.support_count, reverse=True)


def _hostname(url: str) -> str:
    return (urlparse(url or "").hostname or "").lower()


def assess_sufficiency(sub_question: str, evidence_items: List[EvidenceItem]) -> Assessment:
    """
    Classify one sub-question's accumulated evidence.

    The checks run in a fixed order (sufficient, then needsDepth, then
    needsMore); boundary cases depend on that order.
    """
    count = len(evidence_items)
    support_max = max([i.support_count for i in evidence_items] + [1])
    domains = {
        _hostname(s.url) for i in evidence_items for s in i.sources if _hostname(s.url)
    }
    quotes = sum(len(i.examples) for i in evidence_items)
    stats = f"items={count} domains={len(domains)} support_max={support_max} quotes={quotes}"

    if (
        count >= MIN_ITEMS_SUFFICIENT
        and len(domains) >= MIN_DOMAINS_SUFFICIENT
        and support_max >= MIN_SUPPORT_SUFFICIENT
    ):
        return Assessment(SUFFICIENT, f"Corroborated evidence across sources ({stats}).")
    if count >= MIN_ITEMS_DEPTH and (len(domains) < MIN_DOMAINS_DEPTH or quotes < MIN_QUOTES_DEPTH):
        return Assessment(NEEDS_DEPTH, f"Evidence is narrow or lacks direct quotes ({stats}).")
    return Assessment(NEEDS_MORE, f"Not enough evidence yet for '{sub_question}' ({stats}).")
