"""Fuzzy matching of product, client and payment method names.

Similarity is Levenshtein based over a normalized form of each string
(lowercase, accents and punctuation removed). Matches at or above
``SIMILARITY_THRESHOLD`` are surfaced as normalization candidates; those at
or above ``HIGH_CONFIDENCE_THRESHOLD`` are applied without asking the user.
"""

import re
import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass, field

from perla.models import EntityCandidate, SaleRecord

SIMILARITY_THRESHOLD = 0.8
HIGH_CONFIDENCE_THRESHOLD = 0.9

_NON_WORD = re.compile(r"[^\w\s]")


@dataclass
class EntityMatch:
    """A previously seen value similar to a candidate name."""

    original: str
    similarity: float


@dataclass
class SimilarEntities:
    """Similar existing values grouped by field."""

    products: list[EntityMatch] = field(default_factory=list)
    clients: list[EntityMatch] = field(default_factory=list)
    payment_methods: list[EntityMatch] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.products or self.clients or self.payment_methods)


def normalize_text(text: str) -> str:
    """Lowercase, strip diacritics and punctuation, trim."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    without_marks = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_WORD.sub("", without_marks).strip()


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(
                min(
                    previous[j] + 1,  # deletion
                    current[j - 1] + 1,  # insertion
                    previous[j - 1] + cost,  # substitution
                )
            )
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Normalized similarity between two names, in [0, 1].

    Two empty strings are an exact match; one empty string matches nothing.
    """
    left = normalize_text(a)
    right = normalize_text(b)

    if left == right:
        return 1.0
    if not left or not right:
        return 0.0

    shorter, longer = sorted((left, right), key=len)
    if shorter in longer:
        return len(shorter) / len(longer)

    distance = levenshtein_distance(left, right)
    return 1 - distance / max(len(left), len(right))


def _similar_values(existing: Iterable[str], candidate: str) -> list[EntityMatch]:
    matches = []
    for value in dict.fromkeys(existing):
        if not value:
            continue
        score = similarity(value, candidate)
        if SIMILARITY_THRESHOLD <= score < 1:
            matches.append(EntityMatch(original=value, similarity=score))
    matches.sort(key=lambda m: m.similarity, reverse=True)
    return matches


def find_similar_entities(
    records: Iterable[SaleRecord],
    product: str | None = None,
    client: str | None = None,
    payment_method: str | None = None,
) -> SimilarEntities:
    """Find existing values close to (but not identical with) the given names."""
    records = list(records)
    result = SimilarEntities()
    if not records:
        return result

    if product:
        result.products = _similar_values((r.product for r in records), product)
    if client:
        result.clients = _similar_values((r.client for r in records), client)
    if payment_method:
        result.payment_methods = _similar_values(
            (r.payment_method for r in records), payment_method
        )
    return result


def normalization_candidates(
    new_records: Iterable[SaleRecord], existing: Iterable[SaleRecord]
) -> list[EntityCandidate]:
    """Best normalization candidate per (field, value) across new records."""
    existing = list(existing)
    by_key: dict[tuple[str, str], EntityCandidate] = {}

    for record in new_records:
        similar = find_similar_entities(
            existing,
            product=record.product,
            client=record.client,
            payment_method=record.payment_method,
        )
        for field_name, value, matches in (
            ("product", record.product, similar.products),
            ("client", record.client, similar.clients),
            ("payment_method", record.payment_method, similar.payment_methods),
        ):
            if not matches:
                continue
            key = (field_name, value)
            if key in by_key:
                by_key[key].record_ids.append(record.id)
                continue
            best = matches[0]
            by_key[key] = EntityCandidate(
                field=field_name,
                value=value,
                canonical=best.original,
                similarity=best.similarity,
                record_ids=[record.id],
            )
    return list(by_key.values())


def apply_normalization(record: SaleRecord, candidate: EntityCandidate) -> SaleRecord:
    """Return a copy of ``record`` with the candidate's canonical spelling applied.

    Products and clients keep the spelling the user typed and gain a
    ``normalized_*`` value; payment methods are replaced outright.
    """
    if candidate.field == "product":
        return record.copy(normalized_product=candidate.canonical)
    if candidate.field == "client":
        return record.copy(normalized_client=candidate.canonical)
    if candidate.field == "payment_method":
        return record.copy(payment_method=candidate.canonical)
    raise ValueError(f"Unknown normalization field: {candidate.field!r}")
