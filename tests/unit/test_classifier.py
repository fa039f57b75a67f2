import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from tender_agent.agent.classifier import DEFAULT_RULES, IntentClassifier, IntentRule, KeywordClause
from tender_agent.types import Intent


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("trova bandi software", Intent.SEARCH),
        ("mostrami le gare di appalto a Roma", Intent.SEARCH),
        ("analizza questo bando per la mia azienda", Intent.ANALYZE),
        ("voglio candidarmi: prepara la domanda", Intent.APPLY),
        ("rivedi le clausole del contratto", Intent.REVIEW_CONTRACT),
        ("fammi una shortlist", Intent.RANK),
        ("dammi la classifica dei bandi", Intent.RANK),
        ("quali sono i migliori bandi per me", Intent.RANK),
        ("consigli personalizzati", Intent.PERSONALIZE),
        ("ciao, come funziona?", Intent.GENERAL),
    ],
)
def test_classify_text(text: str, expected: Intent) -> None:
    assert IntentClassifier().classify_text(text) is expected


def test_search_verbs_override_rank_keywords() -> None:
    classifier = IntentClassifier()

    assert classifier.classify_text("cerca la classifica dei bandi") is Intent.SEARCH
    assert classifier.classify_text("trova bandi con priorità alta") is Intent.SEARCH
    assert classifier.classify_text("search and rank tenders") is Intent.SEARCH


def test_migliori_without_personal_context_is_search() -> None:
    assert IntentClassifier().classify_text("i migliori bandi di gara") is Intent.SEARCH


def test_earlier_rules_win_on_shared_vocabulary() -> None:
    # "analizza" and "bando" both match; analysis is evaluated first.
    assert IntentClassifier().classify_text("analizza il bando 101-2025") is Intent.ANALYZE


def test_uses_last_user_message() -> None:
    messages = [
        HumanMessage(content="trova bandi software"),
        AIMessage(content="Ecco 3 bandi."),
        HumanMessage(content="analizza il primo"),
    ]
    assert IntentClassifier().classify(messages) is Intent.ANALYZE


def test_no_user_message_is_unknown() -> None:
    messages = [SystemMessage(content="sei un assistente"), AIMessage(content="Ciao!")]
    assert IntentClassifier().classify(messages) is Intent.UNKNOWN
    assert IntentClassifier().classify([HumanMessage(content="   ")]) is Intent.UNKNOWN


def test_custom_rules() -> None:
    classifier = IntentClassifier(
        rules=[IntentRule(Intent.APPLY, (KeywordClause(("bando",), excludes=("vecchio",)),))]
    )
    assert classifier.classify_text("nuovo bando") is Intent.APPLY
    assert classifier.classify_text("vecchio bando") is Intent.GENERAL


def test_rule_order_is_load_bearing() -> None:
    reordered = IntentClassifier(rules=tuple(reversed(DEFAULT_RULES)))

    assert IntentClassifier().classify_text("analizza il bando 101-2025") is Intent.ANALYZE
    assert reordered.classify_text("analizza il bando 101-2025") is Intent.SEARCH
