"""
Error taxonomy for the flow engine.

  MissingDataError          : a referenced step or flow version cannot be
                               resolved; the event is aborted untouched.
  ConversationConflictError : an atomic create/update lost a race.
  FlowValidationError       : published content is structurally invalid.

Transport delivery failures live in channels.base.ChannelError.
"""
from __future__ import annotations


class FlowEngineError(Exception):
    """Base exception for all engine operations."""


class MissingDataError(FlowEngineError):
    pass


class StepNotFoundError(MissingDataError):
    def __init__(self, step_id: str, flow_id: str = "", version: int = 0):
        self.step_id = step_id
        self.flow_id = flow_id
        self.version = version
        super().__init__(f"Step '{step_id}' not found in flow {flow_id} v{version}")


class FlowVersionNotFoundError(MissingDataError):
    def __init__(self, flow_id: str, version: int):
        self.flow_id = flow_id
        self.version = version
        super().__init__(f"Flow {flow_id} has no published version {version}")


class ConversationConflictError(FlowEngineError):
    def __init__(self, phone: str, reason: str = ""):
        self.phone = phone
        self.reason = reason
        super().__init__(f"Conversation conflict for {phone}: {reason or 'concurrent write'}")


class FlowValidationError(FlowEngineError):
    def __init__(self, flow_name: str, errors: list[str]):
        self.flow_name = flow_name
        self.errors = errors
        super().__init__(f"Invalid flow '{flow_name}': {'; '.join(errors)}")
