"""
Courier Backend — Log Redaction Rules
=======================================

What:  Declarative rules that replace sensitive values in a request log
       record before it is serialized.
How:   Each rule is a path into a generic tree (dicts, lists, scalars) plus
       a replacement value. `redact()` walks the tree along each path and
       returns a new tree; the input is never mutated, so the request the
       application sees is untouched.
Who:   Applied by RequestLoggingMiddleware to every logged request.

Path syntax:
    ("headers", "authorization")       mapping key
    ("body", "attachments", "*", "data")
                                       "*" visits every element of a list;
                                       on a single mapping it visits the
                                       mapping itself (a lone attachment is
                                       redacted in place, not wrapped in a list)

Invariants:
    - A value is replaced, never removed. The key stays so log readers can
      still tell that, e.g., a request carried an Authorization header.
    - Keys that are absent, or whose value is empty (None, "", {}, []), are
      left alone. Nothing is added to the record.
    - Unexpected shapes (a string where a mapping was expected, a list of
      strings, ...) stop the walk for that rule. Redaction never raises.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Tuple

REDACTED = "[REDACTED]"

WILDCARD = "*"


@dataclass(frozen=True)
class RedactionRule:
    """
    Replace the value found at `path` with `replacement`.

    Attributes:
        path:              Keys to follow from the root of the record
        replacement:       Value written in place of the sensitive one
        case_insensitive:  Match mapping keys ignoring case (HTTP headers)
    """

    path: Tuple[str, ...]
    replacement: Any = REDACTED
    case_insensitive: bool = False

    def apply(self, tree: Any) -> Any:
        return _apply(tree, self.path, self)


# Process-wide rule set, fixed at import time.
DEFAULT_REDACTION_RULES: Tuple[RedactionRule, ...] = (
    # Presence of the header marks an API-key authenticated call
    RedactionRule(("headers", "authorization"), case_insensitive=True),
    # Presence of the header marks a session (cookie) authenticated call
    RedactionRule(("headers", "cookie"), case_insensitive=True),
    # Attachment file contents; filename and other metadata stay
    RedactionRule(("body", "attachments", WILDCARD, "data")),
    # Free-text message bodies
    RedactionRule(("body", "body")),
)


def redact(tree: Any, rules: Tuple[RedactionRule, ...] = DEFAULT_REDACTION_RULES) -> Any:
    """Return a copy of `tree` with every rule applied in order."""
    for rule in rules:
        tree = rule.apply(tree)
    return tree


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, bytes, Mapping, list, tuple)) and not value)


def _apply(node: Any, path: Tuple[str, ...], rule: RedactionRule) -> Any:
    step, rest = path[0], path[1:]

    if step == WILDCARD:
        if isinstance(node, list):
            if not rest:
                return [item if _is_empty(item) else rule.replacement for item in node]
            return [_apply(item, rest, rule) for item in node]
        if isinstance(node, Mapping):
            return _apply(node, rest, rule) if rest else node
        return node

    if not isinstance(node, Mapping):
        return node

    matched = [key for key in node if _key_matches(key, step, rule.case_insensitive)]
    if not matched:
        return node

    updated = dict(node)
    for key in matched:
        value = node[key]
        if rest:
            updated[key] = _apply(value, rest, rule)
        elif not _is_empty(value):
            updated[key] = rule.replacement
    return updated


def _key_matches(key: Any, step: str, case_insensitive: bool) -> bool:
    if not isinstance(key, str):
        return False
    if case_insensitive:
        return key.casefold() == step.casefold()
    return key == step
