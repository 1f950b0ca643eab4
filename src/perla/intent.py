"""Detect what the user wanted to change in their latest message.

The session uses an ``IntentClassifier`` to decide which fields of a sale an
update may touch, to resolve edits locally when a sale is selected, and to read
yes/no answers to normalization prompts. ``KeywordIntentClassifier`` is a
Spanish keyword implementation; any object with the same two methods can be
plugged into ``SalesSession``.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

NUMERIC_FIELDS = ("amount", "unit_price", "total_price")


@dataclass
class EditIntent:
    """Fields referenced by an utterance, with the value given when one was found."""

    delete: bool = False
    fields: dict[str, Any] = field(default_factory=dict)

    def references(self, field_name: str) -> bool:
        return field_name in self.fields

    def value(self, field_name: str) -> Any:
        return self.fields.get(field_name)

    @property
    def is_empty(self) -> bool:
        return not self.delete and not self.fields


@runtime_checkable
class IntentClassifier(Protocol):
    def classify(self, utterance: str) -> EditIntent: ...

    def confirmation(self, utterance: str) -> bool | None: ...


def fold(text: str) -> str:
    """Lowercase and strip accents, keeping punctuation and digits."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


_NUMBER = re.compile(r"\d{1,3}(?:\.\d{3})+(?!\d)|\d+(?:[.,]\d+)?")

_DELETE = re.compile(r"\b(?:elimin|borr|quit|remov|remuev|sac[aá]r?\b)\w*")

_FIELD_KEYWORDS = {
    "amount": re.compile(r"\b(?:cantidad|monto|unidades|cuantos|cuantas)\b"),
    "unit_price": re.compile(
        r"\b(?:precio|valor|cuesta|costo|por unidad|cada unidad|cada uno|cada una)\b"
    ),
    "total_price": re.compile(r"\btotal\b"),
    "client": re.compile(r"\bcliente\b"),
    "product": re.compile(r"\bproducto\b"),
    "payment_method": re.compile(
        r"\b(?:pago|efectivo|tarjeta|transferencia|debito|credito|mercado ?pago)\b"
    ),
    "date": re.compile(r"\bfecha\b"),
}

# Most specific first
_PAYMENT_METHODS = {
    "debito": "Tarjeta de débito",
    "credito": "Tarjeta de crédito",
    "mercadopago": "Mercado Pago",
    "mercado pago": "Mercado Pago",
    "efectivo": "Efectivo",
    "tarjeta": "Tarjeta",
    "transferencia": "Transferencia",
}

# Text after "cliente"/"producto", skipping a connective, up to punctuation
_NAME_AFTER = (
    r"\b{keyword}\s+(?:(?:a|es|por|sea|de|del|como)\s+)?"
    r"([^\d.,;:!?]+?)\s*(?:$|[.,;:!?])"
)

_AFFIRMATIVE = {
    "si", "yes", "dale", "ok", "okay", "confirmo", "claro", "correcto",
    "perfecto", "afirmativo", "exacto", "listo", "bueno", "va",
}
_NEGATIVE = {"no", "nop", "nope", "negativo", "cancelar", "cancela", "mantener", "dejalo"}
_AFFIRMATIVE_PHRASES = {"de acuerdo", "esta bien", "por supuesto"}
_NEGATIVE_PHRASES = {"mejor no", "para nada", "no gracias", "dejalos asi"}


def parse_number(text: str) -> float | None:
    """Read a number written with thousands dots ("5.000") or a decimal comma."""
    if re.fullmatch(r"\d{1,3}(?:\.\d{3})+", text):
        return float(text.replace(".", ""))
    try:
        return float(text.replace(",", "."))
    except ValueError:
        return None


def numbers_in(text: str) -> list[float]:
    """Every number written in ``text``, in order."""
    numbers = []
    for match in _NUMBER.finditer(text):
        number = parse_number(match.group(0))
        if number is not None:
            numbers.append(number)
    return numbers


class KeywordIntentClassifier:
    """Spanish keyword heuristics over the raw utterance."""

    def classify(self, utterance: str) -> EditIntent:
        folded = fold(utterance)
        intent = EditIntent(delete=bool(_DELETE.search(folded)))

        for field_name, pattern in _FIELD_KEYWORDS.items():
            match = pattern.search(folded)
            if not match:
                continue
            if field_name in NUMERIC_FIELDS:
                intent.fields[field_name] = self._number_near(folded, match)
            elif field_name in ("client", "product"):
                intent.fields[field_name] = self._name_after(utterance, field_name)
            elif field_name == "payment_method":
                intent.fields[field_name] = self._payment_method(folded)
            else:
                intent.fields[field_name] = None

        return intent

    def confirmation(self, utterance: str) -> bool | None:
        words = re.findall(r"\w+", fold(utterance))
        if not words:
            return None
        phrase = " ".join(words)

        if phrase in _NEGATIVE_PHRASES or words[0] in _NEGATIVE:
            return False
        if phrase in _AFFIRMATIVE_PHRASES or (words[0] in _AFFIRMATIVE and len(words) <= 4):
            return True
        return None

    def _number_near(self, folded: str, keyword: re.Match[str]) -> float | None:
        """Closest number to the keyword, preferring one that follows it on a tie."""
        best: tuple[int, int, str] | None = None
        for match in _NUMBER.finditer(folded):
            if match.start() >= keyword.end():
                rank = (match.start() - keyword.end(), 0, match.group(0))
            else:
                rank = (max(keyword.start() - match.end(), 0), 1, match.group(0))
            if best is None or rank < best:
                best = rank
        return parse_number(best[2]) if best else None

    def _name_after(self, utterance: str, keyword: str) -> str | None:
        pattern = re.compile(_NAME_AFTER.format(keyword=keyword), re.IGNORECASE)
        match = pattern.search(utterance)
        if not match:
            return None
        name = match.group(1).strip()
        return name or None

    def _payment_method(self, folded: str) -> str | None:
        for keyword, canonical in _PAYMENT_METHODS.items():
            if re.search(rf"\b{keyword}\b", folded):
                return canonical
        return None
