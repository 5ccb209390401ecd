"""
Structural validation of flow content.

Run on publish and available to tooling. A flow that fails here would
otherwise surface as a StepNotFoundError in the middle of a live dialogue.
"""
from __future__ import annotations

from models.schemas import FlowContent


def validate_flow_content(content: FlowContent) -> list[str]:
    """Validate a flow's content. Returns list of error messages."""
    errors = []

    if not content.steps:
        errors.append("flow has no steps")
        return errors

    if content.entry_step_id not in content.steps:
        errors.append(f"entry_step_id '{content.entry_step_id}' not in steps")

    for step_id, step in content.steps.items():
        if step.id and step.id != step_id:
            errors.append(f"step '{step_id}' declares mismatched id '{step.id}'")

        seen_keys: set[str] = set()
        for opt in step.options:
            key = opt.key.strip().lower()
            if not key:
                errors.append(f"step '{step_id}' has an option with an empty key")
            elif key in seen_keys:
                errors.append(f"step '{step_id}' repeats option key '{opt.key}'")
            seen_keys.add(key)

            if opt.next_step_id not in content.steps:
                errors.append(
                    f"step '{step_id}' option '{opt.key}' points to missing step '{opt.next_step_id}'"
                )

    return errors
