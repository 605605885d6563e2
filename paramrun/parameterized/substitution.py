"""{{param}} placeholder substitution for steps and assertions."""

import re
from typing import Any

from paramrun.parameterized.models import (
    PLACEHOLDER_PATTERN,
    ParameterizedTestDefinition,
    ParameterSet,
)


def resolve_parameters(template: Any, values: dict[str, Any], pattern: re.Pattern = PLACEHOLDER_PATTERN) -> Any:
    """Substitute ``{{name}}`` with ``str(values[name])`` throughout ``template``.

    Strings are substituted, dicts and lists are walked, anything else is
    returned as is. A placeholder with no entry in ``values`` is kept
    verbatim so the executor reports it.

    Example:
        >>> resolve_parameters({"value": "{{username}}", "n": 3}, {"username": "admin"})
        {'value': 'admin', 'n': 3}
    """
    if isinstance(template, str):
        return pattern.sub(
            lambda match: str(values[match.group(1)]) if match.group(1) in values else match.group(0),
            template,
        )
    if isinstance(template, dict):
        return {key: resolve_parameters(item, values, pattern) for key, item in template.items()}
    if isinstance(template, list):
        return [resolve_parameters(item, values, pattern) for item in template]
    return template


def expand_steps(
    definition: ParameterizedTestDefinition,
    values: dict[str, Any],
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Return (steps, assertions) with placeholders replaced by ``values``.

    Steps are sent as setup, before_each, the test steps, after_each and
    teardown, in that order.
    """
    steps = [
        resolve_parameters(step.model_dump(exclude_none=True), values)
        for step in definition.all_steps
    ]
    assertions = [
        resolve_parameters(assertion.model_dump(exclude_none=True), values)
        for assertion in definition.assertions
    ]
    return steps, assertions


def find_missing_parameters(
    definition: ParameterizedTestDefinition,
    parameter_set: ParameterSet,
) -> set[str]:
    """Placeholders used by the definition that the set does not provide."""
    return definition.get_all_parameter_placeholders() - set(parameter_set.values)
