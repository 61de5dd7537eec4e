from __future__ import annotations

import pytest
from pydantic import ValidationError

from agentbridge.errors import ProtocolError
from agentbridge.session_state import (
    EMPTY_METADATA,
    ModelInfo,
    apply_update,
    parse_new_session,
    resolve_preferred_model,
)

NEW_SESSION = {
    "sessionId": "sess-1",
    "modes": {"currentModeId": "ask", "availableModes": [{"id": "ask", "name": "Ask"}, {"id": "code", "name": "Code"}]},
    "models": {
        "currentModelId": "openai/gpt-5",
        "availableModels": [
            {"modelId": "openai/gpt-5", "name": "GPT-5"},
            {"modelId": "opencode/grok-code", "name": "OpenCode Grok"},
        ],
    },
    "configOptions": [{"id": "effort", "value": "high"}],
}


def test_parse_new_session_populates_metadata() -> None:
    metadata = parse_new_session(NEW_SESSION)

    assert metadata.session_id == "sess-1"
    assert [mode.id for mode in metadata.available_modes] == ["ask", "code"]
    assert metadata.current_mode_id == "ask"
    assert [model.model_id for model in metadata.available_models] == ["openai/gpt-5", "opencode/grok-code"]
    assert metadata.current_model_id == "openai/gpt-5"
    assert metadata.available_commands == ()
    assert metadata.config_options == ({"id": "effort", "value": "high"},)
    assert metadata.supports_models is True


def test_parse_new_session_without_models() -> None:
    metadata = parse_new_session({"sessionId": "sess-2"})
    assert metadata.supports_models is False
    assert metadata.available_models == ()


@pytest.mark.parametrize("result", [None, [], {"modes": {}}, {"sessionId": ""}, {"sessionId": "s", "modes": {"availableModes": [{}]}}])
def test_parse_new_session_rejects_bad_shapes(result) -> None:
    with pytest.raises(ProtocolError):
        parse_new_session(result)


def test_updates_patch_only_addressed_field() -> None:
    metadata = parse_new_session(NEW_SESSION)

    moded = apply_update(metadata, {"sessionUpdate": "current_mode_update", "currentModeId": "code"})
    assert moded.current_mode_id == "code"
    assert moded.current_model_id == metadata.current_model_id
    assert moded.available_modes == metadata.available_modes

    modeled = apply_update(moded, {"sessionUpdate": "current_model_update", "currentModelId": "opencode/grok-code"})
    assert modeled.current_model_id == "opencode/grok-code"
    assert modeled.current_mode_id == "code"

    commands = apply_update(
        modeled,
        {
            "sessionUpdate": "available_commands_update",
            "availableCommands": [{"name": "review", "description": "Review", "input": {"hint": "path"}}, {"bad": 1}],
        },
    )
    assert [(cmd.name, cmd.hint) for cmd in commands.available_commands] == [("review", "path")]
    assert commands.current_model_id == "opencode/grok-code"


def test_non_metadata_updates_are_ignored() -> None:
    metadata = parse_new_session(NEW_SESSION)
    chunk = {"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "hi"}}

    assert apply_update(metadata, chunk) is None
    assert apply_update(metadata, {"sessionUpdate": "something_new"}) is None
    assert apply_update(EMPTY_METADATA, {"sessionUpdate": "current_mode_update", "currentModeId": "x"}) is None


def test_snapshots_are_frozen_copies() -> None:
    metadata = parse_new_session(NEW_SESSION)
    snapshot = metadata.snapshot()

    assert snapshot == metadata
    assert snapshot.config_options[0] is not metadata.config_options[0]
    with pytest.raises(ValidationError):
        snapshot.session_id = "other"


def test_resolve_preferred_model() -> None:
    models = [
        ModelInfo(model_id="openai/gpt-5", name="GPT-5"),
        ModelInfo(model_id="opencode/grok-code", name="OpenCode Grok"),
        ModelInfo(model_id="opencode", name="Plain"),
    ]

    assert resolve_preferred_model(models, "OPENCODE") == "opencode"
    assert resolve_preferred_model(models, "gpt-5") == "openai/gpt-5"
    assert resolve_preferred_model(models, "grok") == "opencode/grok-code"
    assert resolve_preferred_model(models, "claude") is None
    assert resolve_preferred_model(models, "  ") is None
