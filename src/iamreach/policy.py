"""Normalize IAM policy documents into canonical statements.

Known limitations (this is a coverage model, not IAM evaluation):

- A statement with ``NotAction`` and no ``Action`` normalizes to an empty
  action list, so it never matches anything in ``action_allowed`` even
  though IAM would read it as "every action except these".
- ``action_allowed`` ignores ``Effect``.  An action granted by one
  statement and explicitly denied by another is still reported as covered.
- Conditions are carried through untouched and never evaluated.
"""
from __future__ import annotations

import json
import logging
import re
from functools import lru_cache
from typing import Any, Mapping, Union
from urllib.parse import unquote

from .errors import DecodeError, ParseError, StructureError
from .models import Effect, PolicyStatement, Result

logger = logging.getLogger(__name__)

PolicyDocument = Union[str, Mapping[str, Any]]

# A '%' that does not start a two-digit hex escape.
_BAD_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def normalize_statement(raw: Mapping[str, Any]) -> PolicyStatement:
    """
    Convert one decoded statement into a PolicyStatement.

    ``Action``/``Resource`` may be a string or a list of strings; lists are
    kept as given (no de-duplication, no reordering).  ``Effect`` defaults
    to Allow only when it is absent.

    Raises:
        StructureError: an element field holds something other than a
            string or a list of strings, or ``Effect`` is not Allow/Deny.
    """
    for key in ("Action", "NotAction", "Resource", "NotResource"):
        if _present(raw.get(key)):
            _check_strings(key, raw[key])

    if _present(raw.get("Action")):
        actions = _as_tuple(raw["Action"])
    elif _present(raw.get("NotAction")):
        actions = ()
    else:
        actions = ("*",)

    if _present(raw.get("Resource")):
        resources = _as_tuple(raw["Resource"])
    else:
        # NotResource is not modelled; both branches widen to every resource
        resources = ("*",)

    return PolicyStatement(
        effect=_effect(raw.get("Effect")),
        actions=actions,
        resources=resources,
        conditions=raw.get("Condition"),
    )


def parse_document(raw: str) -> Result[list[PolicyStatement]]:
    """
    URL-decode, JSON-decode and normalize a policy document string.

    Never raises for bad input: the Result carries a DecodeError,
    ParseError or StructureError instead.
    """
    try:
        decoded = _strict_unquote(raw)
    except DecodeError as exc:
        return Result.failure(exc)

    try:
        document = json.loads(decoded)
    except json.JSONDecodeError as exc:
        return Result.failure(ParseError(f"Failed to parse policy JSON: {exc}"))
    except RecursionError:
        return Result.failure(ParseError("Failed to parse policy JSON: nested too deeply"))

    try:
        return Result.success(parse_policy_object(document))
    except StructureError as exc:
        return Result.failure(exc)


def parse_policy_object(document: Any) -> list[PolicyStatement]:
    """
    Normalize an already-decoded policy document.

    Raises:
        StructureError: *document* is not an object with a ``Statement``
            object or list of objects, or a statement is malformed.
    """
    if not isinstance(document, Mapping) or "Statement" not in document:
        raise StructureError(
            "Invalid policy document structure - missing Statement property"
        )
    statements = document["Statement"]
    if isinstance(statements, Mapping):
        statements = [statements]
    if not isinstance(statements, list) or not all(
        isinstance(s, Mapping) for s in statements
    ):
        raise StructureError("Statement must be an object or a list of objects")
    return [normalize_statement(s) for s in statements]


def load_statements(document: PolicyDocument) -> Result[list[PolicyStatement]]:
    """Parse either a raw document string or a decoded document mapping."""
    if isinstance(document, str):
        return parse_document(document)
    try:
        return Result.success(parse_policy_object(document))
    except StructureError as exc:
        return Result.failure(exc)


def extract_actions(document: PolicyDocument) -> Result[set[str]]:
    """Return the set of every action named by any statement."""
    result = load_statements(document)
    if not result.ok:
        return Result.failure(result.error)  # type: ignore[arg-type]
    actions: set[str] = set()
    for statement in result.unwrap():
        actions.update(statement.actions)
    return Result.success(actions)


def action_allowed(document: PolicyDocument, action: str) -> bool:
    """
    Report whether any statement in *document* names *action*.

    Matches verbatim entries, ``service:*`` and ``*``, and general
    ``*``-globs.  Case-sensitive.  This is coverage only: ``Deny``
    statements are not subtracted.  Unparseable documents cover nothing.
    """
    result = extract_actions(document)
    if not result.ok:
        logger.debug("Policy document could not be parsed: %s", result.error)
        return False
    actions = result.unwrap()

    if action in actions:
        return True

    service = action.split(":", 1)[0]
    if f"{service}:*" in actions or "*" in actions:
        return True

    return any(
        "*" in pattern and _glob_regex(pattern).match(action) is not None
        for pattern in actions
    )


def action_service(action: str) -> str:
    """``"s3:GetObject"`` -> ``"s3"``; ``"*"`` -> ``"*"``."""
    return action.split(":", 1)[0]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _present(value: Any) -> bool:
    # an empty list still counts as given; a missing key or "" does not
    return value is not None and value != ""


def _as_tuple(value: Union[str, list]) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    return tuple(value)


def _check_strings(key: str, value: Any) -> None:
    if isinstance(value, str):
        return
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return
    raise StructureError(
        f"{key} must be a string or a list of strings, got {type(value).__name__}"
    )


def _effect(value: Any) -> Effect:
    if not _present(value):
        return Effect.ALLOW
    for effect in Effect:
        if value == effect.value:
            return effect
    raise StructureError(f"Effect must be Allow or Deny, got {value!r}")


def _strict_unquote(raw: str) -> str:
    bad = _BAD_ESCAPE_RE.search(raw)
    if bad is not None:
        raise DecodeError(
            f"Failed to decode policy document: malformed escape at offset {bad.start()}"
        )
    try:
        return unquote(raw, errors="strict")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"Failed to decode policy document: {exc}") from exc


@lru_cache(maxsize=512)
def _glob_regex(pattern: str) -> re.Pattern:
    body = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(f"^{body}$")
