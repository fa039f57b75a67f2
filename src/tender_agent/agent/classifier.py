"""Rule-based intent classification for user turns."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from tender_agent.agent.messages import last_user_text
from tender_agent.types import Intent

_SEARCH_VERBS = ("cerca", "trova")


@dataclass(slots=True, frozen=True)
class KeywordClause:
    """Matches when any keyword is present, a `requires` keyword is present
    (if any are given), and no `excludes` keyword is present."""

    keywords: tuple[str, ...]
    requires: tuple[str, ...] = ()
    excludes: tuple[str, ...] = ()

    def matches(self, text: str) -> bool:
        if not any(keyword in text for keyword in self.keywords):
            return False
        if self.requires and not any(keyword in text for keyword in self.requires):
            return False
        return not any(keyword in text for keyword in self.excludes)


@dataclass(slots=True, frozen=True)
class IntentRule:
    intent: Intent
    clauses: tuple[KeywordClause, ...]

    def matches(self, text: str) -> bool:
        return any(clause.matches(text) for clause in self.clauses)


# Order is load-bearing: categories share vocabulary, so earlier rules win.
DEFAULT_RULES: tuple[IntentRule, ...] = (
    IntentRule(
        Intent.ANALYZE,
        (
            KeywordClause(
                ("analizza", "eligibilità", "compatibile", "adatto", "score", "punteggio")
            ),
        ),
    ),
    IntentRule(
        Intent.APPLY,
        (
            KeywordClause(
                ("applica", "candidati", "invia", "domanda", "partecipa", "apply", "submit")
            ),
        ),
    ),
    IntentRule(
        Intent.REVIEW_CONTRACT,
        (
            KeywordClause(
                (
                    "contratto",
                    "contract",
                    "revisione",
                    "review",
                    "rischi",
                    "clausole",
                    "clauses",
                    "upload",
                    "carica",
                )
            ),
        ),
    ),
    IntentRule(
        Intent.RANK,
        (
            KeywordClause(("classifica",), excludes=_SEARCH_VERBS),
            KeywordClause(("migliori",), requires=("per me", "personalizzato")),
            KeywordClause(("shortlist",)),
            KeywordClause(("priorità",), excludes=_SEARCH_VERBS),
            KeywordClause(("rank",), excludes=("search", "find")),
        ),
    ),
    IntentRule(
        Intent.PERSONALIZE,
        (
            KeywordClause(
                ("suggerimenti", "raccomandazioni", "per me", "personalizzato", "consigli")
            ),
        ),
    ),
    IntentRule(
        Intent.SEARCH,
        (
            KeywordClause(
                ("bando", "bandi", "tender", "appalto", "gara", "trova", "cerca", "mostra")
            ),
        ),
    ),
)


class IntentClassifier:
    """Maps the latest user message to an `Intent` via ordered keyword rules."""

    def __init__(self, rules: Sequence[IntentRule] | None = None) -> None:
        self.rules: tuple[IntentRule, ...] = tuple(rules if rules is not None else DEFAULT_RULES)

    def classify(self, messages: Iterable[Any]) -> Intent:
        text = last_user_text(messages)
        if text is None:
            return Intent.UNKNOWN
        return self.classify_text(text)

    def classify_text(self, text: str) -> Intent:
        lowered = text.lower()
        for rule in self.rules:
            if rule.matches(lowered):
                return rule.intent
        return Intent.GENERAL
