"""
Rule definition loader (``approval_config.rules_loader``).

Responsibility
--------------
Load tenant rule definitions from YAML so that rule sets can be
version-controlled and seeded with ``scripts/load_rules.py``.

File format::

    tenant_id: acme
    rules:
      - process_type: LEAVE_APPROVAL
        name: Leave approval
        conditions:
          - "entity.days > 2"
        steps:
          - strategy: direct_manager
            auto_advance_after: 24h
          - strategy: role_holder
            role_id: HR_ADMIN
            can_skip: true

Step orders follow list position unless ``step_order`` is given.
Durations accept integer seconds or a number with an ``s``/``m``/``h``/``d``
suffix.

Failure modes
-------------
* Missing required keys  -> ``KeyError`` propagates.
* Unknown strategy or malformed duration  -> ``ValueError``.
* Structural validation happens in ``RuleStore`` when the rules are saved.
"""

from __future__ import annotations

import re
from datetime import timedelta
from pathlib import Path
from typing import Any

from approval_config.settings import load_yaml_file
from approval_kernel.domain.workflow import ApproverStrategy, RuleDefinition, StepDefinition

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Any) -> timedelta | None:
    """Parse ``90``, ``"45m"``, ``"24h"`` or ``"2d"`` into a timedelta."""
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(seconds=value)
    match = _DURATION_RE.match(str(value))
    if match is None:
        raise ValueError(f"Cannot parse duration from {value!r}")
    amount, unit = match.groups()
    return timedelta(seconds=float(amount) * _UNIT_SECONDS[unit])


def parse_strategy(value: str) -> ApproverStrategy:
    try:
        return ApproverStrategy(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in ApproverStrategy)
        raise ValueError(f"Unknown approver strategy {value!r} (allowed: {allowed})") from None


def parse_step(data: dict[str, Any], position: int) -> StepDefinition:
    auto_advance = data.get("auto_advance_after")
    if auto_advance is None and data.get("auto_advance_hours") is not None:
        auto_advance = timedelta(hours=float(data["auto_advance_hours"]))
    return StepDefinition(
        step_order=int(data.get("step_order", position)),
        strategy=parse_strategy(data["strategy"]),
        role_id=data.get("role_id"),
        employee_id=data.get("employee_id"),
        auto_advance_after=parse_duration(auto_advance),
        can_skip=bool(data.get("can_skip", False)),
    )


def parse_rule(tenant_id: str, data: dict[str, Any]) -> RuleDefinition:
    steps = tuple(
        parse_step(step, position)
        for position, step in enumerate(data.get("steps") or [], start=1)
    )
    conditions = data.get("conditions") or []
    if isinstance(conditions, str):
        conditions = [conditions]
    return RuleDefinition(
        tenant_id=tenant_id,
        process_type=str(data["process_type"]),
        name=str(data.get("name") or data["process_type"]),
        steps=steps,
        conditions=tuple(str(c) for c in conditions),
        is_active=bool(data.get("is_active", True)),
    )


def parse_rule_set(data: dict[str, Any], tenant_id: str | None = None) -> list[RuleDefinition]:
    """Parse a rule-set mapping; ``tenant_id`` overrides the file's tenant."""
    tenant = tenant_id or data["tenant_id"]
    return [parse_rule(tenant, rule) for rule in data.get("rules") or []]


def load_rule_file(path: Path, tenant_id: str | None = None) -> list[RuleDefinition]:
    return parse_rule_set(load_yaml_file(path), tenant_id)
