from tender_agent.agent.handlers import DEFAULT_CAPABILITIES
from tender_agent.agent.supervisor import HANDLER_NODES, ROUTES, TRANSITIONS
from tender_agent.types import Intent


def test_every_prompt_names_its_tools() -> None:
    for capability in DEFAULT_CAPABILITIES:
        for tool in capability.tools:
            assert f"`{tool}`" in capability.instructions, (capability.agent_id, tool)


def test_prompts_forbid_invented_facts() -> None:
    for capability in DEFAULT_CAPABILITIES:
        assert "never invent tenders" in capability.instructions
        assert "ask the user" in capability.instructions


def test_irreversible_actions_require_confirmation() -> None:
    (application,) = [c for c in DEFAULT_CAPABILITIES if c.agent_id == "application_agent"]
    assert "confirm" in application.instructions.lower()


def test_capabilities_cover_every_handler_node() -> None:
    assert {capability.node for capability in DEFAULT_CAPABILITIES} == set(HANDLER_NODES)
    assert len({capability.agent_id for capability in DEFAULT_CAPABILITIES}) == len(HANDLER_NODES)


def test_transition_table_is_classify_handler_format() -> None:
    assert TRANSITIONS["classify"] == {node.value for node in HANDLER_NODES}
    for node in HANDLER_NODES:
        assert TRANSITIONS[node.value] == {"format"}
    assert TRANSITIONS["format"] == frozenset()
    assert ROUTES[Intent.GENERAL] is Intent.SEARCH
    assert ROUTES[Intent.UNKNOWN] is None
