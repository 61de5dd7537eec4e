"""Immutable session metadata snapshots and the patches applied to them."""

from __future__ import annotations

import copy
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agentbridge.errors import ProtocolError

CURRENT_MODE_UPDATE = "current_mode_update"
CURRENT_MODEL_UPDATE = "current_model_update"
AVAILABLE_COMMANDS_UPDATE = "available_commands_update"


class _Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore", protected_namespaces=())


class ModeInfo(_Snapshot):
    id: str
    name: str = ""
    description: str | None = None


class ModelInfo(_Snapshot):
    model_id: str = Field(alias="modelId")
    name: str = ""
    description: str | None = None


class CommandInfo(_Snapshot):
    name: str
    description: str = ""
    hint: str | None = None


class SessionMetadata(_Snapshot):
    """Everything the UI needs to know about the active session.

    ``supports_models`` records whether the agent advertised model selection
    (a ``models`` object in its ``session/new`` response).
    """

    session_id: str | None = None
    available_modes: tuple[ModeInfo, ...] = ()
    current_mode_id: str | None = None
    available_models: tuple[ModelInfo, ...] = ()
    current_model_id: str | None = None
    available_commands: tuple[CommandInfo, ...] = ()
    config_options: tuple[Any, ...] = ()
    supports_models: bool = False

    @property
    def active(self) -> bool:
        return self.session_id is not None

    def snapshot(self) -> SessionMetadata:
        """Detached deep copy for handing to subscribers."""
        return self.model_copy(deep=True)


EMPTY_METADATA = SessionMetadata()


def parse_commands(raw: Iterable[Any]) -> tuple[CommandInfo, ...]:
    commands: list[CommandInfo] = []
    for entry in raw:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            continue
        raw_input = entry.get("input")
        hint = raw_input.get("hint") if isinstance(raw_input, dict) else None
        commands.append(
            CommandInfo(
                name=entry["name"],
                description=entry.get("description") or "",
                hint=hint if isinstance(hint, str) else None,
            )
        )
    return tuple(commands)


def parse_new_session(result: Any) -> SessionMetadata:
    """Build the metadata snapshot from a ``session/new`` result.

    Raises :class:`ProtocolError` when the result does not look like one.
    """
    if not isinstance(result, dict):
        raise ProtocolError(f"Unexpected session/new response: {result!r}")
    session_id = result.get("sessionId")
    if not isinstance(session_id, str) or not session_id:
        raise ProtocolError("session/new response is missing sessionId")

    modes = result.get("modes") if isinstance(result.get("modes"), dict) else {}
    models_raw = result.get("models")
    models = models_raw if isinstance(models_raw, dict) else {}
    config_options = result.get("configOptions")
    try:
        return SessionMetadata(
            session_id=session_id,
            available_modes=tuple(ModeInfo.model_validate(m) for m in modes.get("availableModes") or []),
            current_mode_id=modes.get("currentModeId"),
            available_models=tuple(ModelInfo.model_validate(m) for m in models.get("availableModels") or []),
            current_model_id=models.get("currentModelId"),
            available_commands=(),
            config_options=tuple(copy.deepcopy(config_options)) if isinstance(config_options, list) else (),
            supports_models=isinstance(models_raw, dict),
        )
    except ValidationError as exc:
        raise ProtocolError(f"Malformed session/new response: {exc}") from exc


def apply_update(metadata: SessionMetadata, update: Any) -> SessionMetadata | None:
    """Patch the field addressed by a ``session/update`` payload.

    Returns the new snapshot, or ``None`` when the update does not touch
    metadata (message chunks, tool calls, plans, unknown kinds).
    """
    if not isinstance(update, dict) or not metadata.active:
        return None
    kind = update.get("sessionUpdate")
    if kind == CURRENT_MODE_UPDATE and isinstance(update.get("currentModeId"), str):
        return metadata.model_copy(update={"current_mode_id": update["currentModeId"]})
    if kind == CURRENT_MODEL_UPDATE and isinstance(update.get("currentModelId"), str):
        return metadata.model_copy(update={"current_model_id": update["currentModelId"]})
    if kind == AVAILABLE_COMMANDS_UPDATE and isinstance(update.get("availableCommands"), list):
        return metadata.model_copy(update={"available_commands": parse_commands(update["availableCommands"])})
    return None


def resolve_preferred_model(models: Iterable[ModelInfo], query: str) -> str | None:
    """Match ``query`` against model ids and names: exact first, then substring."""
    needle = query.strip().lower()
    if not needle:
        return None
    candidates = list(models)
    for model in candidates:
        if needle in (model.model_id.lower(), model.name.lower()):
            return model.model_id
    for model in candidates:
        if needle in model.model_id.lower() or needle in model.name.lower():
            return model.model_id
    return None
