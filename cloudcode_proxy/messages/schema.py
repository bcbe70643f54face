"""JSON Schema sanitization for upstream function declarations.

The upstream accepts only a narrow OpenAPI-style subset of JSON Schema and
rejects the whole request on an unknown keyword. Constructs it cannot enforce
are removed, but their meaning is kept as a hint appended to the field's
``description`` so the model still sees the constraint.

Both keyword lists are configurable because the accepted dialect changes
between upstream releases.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Iterable, Mapping, Optional

logger = logging.getLogger("cloudcode-proxy")

# Dropped silently: structural keywords with no useful hint.
DEFAULT_UNSUPPORTED_KEYWORDS: frozenset[str] = frozenset({
    "$schema",
    "$id",
    "$comment",
    "additionalProperties",
    "additionalItems",
    "patternProperties",
    "unevaluatedProperties",
    "unevaluatedItems",
    "propertyNames",
    "dependencies",
    "dependentRequired",
    "dependentSchemas",
    "contains",
    "minContains",
    "maxContains",
    "if",
    "then",
    "else",
    "not",
    "title",
    "examples",
    "readOnly",
    "writeOnly",
    "deprecated",
    "contentEncoding",
    "contentMediaType",
    "strict",
})

# Dropped, but recorded in the description.
DEFAULT_HINTED_KEYWORDS: frozenset[str] = frozenset({
    "format",
    "pattern",
    "minLength",
    "maxLength",
    "minimum",
    "maximum",
    "exclusiveMinimum",
    "exclusiveMaximum",
    "multipleOf",
    "minItems",
    "maxItems",
    "uniqueItems",
    "minProperties",
    "maxProperties",
    "default",
    "example",
})

PLACEHOLDER_PROPERTY = "reason"

_MAX_REF_DEPTH = 8


def _format_hint_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _append_hint(schema: dict[str, Any], hint: str) -> None:
    if not hint:
        return
    description = schema.get("description")
    if isinstance(description, str) and description.strip():
        schema["description"] = f"{description} ({hint})"
    else:
        schema["description"] = hint


class SchemaSanitizer:
    """Rewrites tool input schemas into the upstream's schema dialect.

    Args:
        unsupported_keywords: Keywords removed without a hint.
        hinted_keywords: Keywords removed with a ``keyword: value`` hint.
    """

    def __init__(
        self,
        unsupported_keywords: Optional[Iterable[str]] = None,
        hinted_keywords: Optional[Iterable[str]] = None,
    ) -> None:
        self.unsupported_keywords = frozenset(
            DEFAULT_UNSUPPORTED_KEYWORDS if unsupported_keywords is None else unsupported_keywords
        )
        self.hinted_keywords = frozenset(
            DEFAULT_HINTED_KEYWORDS if hinted_keywords is None else hinted_keywords
        )

    def sanitize(self, schema: Optional[Mapping[str, Any]]) -> dict[str, Any]:
        """Sanitize a tool's ``input_schema`` into upstream ``parameters``."""
        if not isinstance(schema, Mapping):
            schema = {}
        root = copy.deepcopy(dict(schema))
        definitions: dict[str, Any] = {}
        for key in ("$defs", "definitions"):
            defs = root.pop(key, None)
            if isinstance(defs, Mapping):
                definitions.update(defs)

        cleaned = self._clean(root, definitions, depth=0)
        if "type" not in cleaned:
            cleaned["type"] = "object"
        elif cleaned["type"] != "object":
            # Function parameters must be an object; wrap anything else.
            cleaned = {
                "type": "object",
                "properties": {"value": cleaned},
                "required": ["value"],
            }
        self._ensure_object_has_properties(cleaned)
        return cleaned

    def _ensure_object_has_properties(self, schema: dict[str, Any]) -> None:
        properties = schema.get("properties")
        if not properties:
            schema["properties"] = {
                PLACEHOLDER_PROPERTY: {
                    "type": "string",
                    "description": "Reason for calling this tool",
                }
            }
            schema["required"] = [PLACEHOLDER_PROPERTY]

    def _resolve_ref(
        self, ref: str, definitions: Mapping[str, Any], depth: int
    ) -> Optional[dict[str, Any]]:
        name = ref.rsplit("/", 1)[-1]
        target = definitions.get(name)
        if not isinstance(target, Mapping) or depth >= _MAX_REF_DEPTH:
            return None
        return copy.deepcopy(dict(target))

    def _clean(
        self, schema: Mapping[str, Any], definitions: Mapping[str, Any], depth: int
    ) -> dict[str, Any]:
        node = dict(schema)
        hints: list[str] = []

        ref = node.pop("$ref", None)
        if isinstance(ref, str):
            resolved = self._resolve_ref(ref, definitions, depth)
            name = ref.rsplit("/", 1)[-1]
            if resolved is None:
                node.setdefault("type", "object")
                hints.append(f"See: {name}")
            else:
                merged = {**resolved, **node}
                return self._clean(merged, definitions, depth + 1)

        all_of = node.pop("allOf", None)
        if isinstance(all_of, list):
            node = self._merge_all_of(node, all_of, definitions, depth)

        for keyword in ("anyOf", "oneOf"):
            options = node.pop(keyword, None)
            if isinstance(options, list) and options:
                node, option_hint = self._collapse_union(node, options, definitions, depth)
                if option_hint:
                    hints.append(option_hint)

        type_value = node.get("type")
        if isinstance(type_value, list):
            non_null = [t for t in type_value if isinstance(t, str) and t != "null"]
            node["type"] = non_null[0] if non_null else "string"
            if len(non_null) > 1:
                hints.append(f"Accepts: {' | '.join(non_null)}")
            if "null" in type_value:
                hints.append("nullable")

        if "const" in node:
            const = node.pop("const")
            if isinstance(const, str):
                node["enum"] = [const]
                node.setdefault("type", "string")
            else:
                hints.append(f"const: {_format_hint_value(const)}")

        if "enum" in node and isinstance(node["enum"], list):
            values = [v for v in node["enum"] if v is not None]
            if values and not all(isinstance(v, str) for v in values):
                hints.append(f"Allowed: {', '.join(_format_hint_value(v) for v in values)}")
                node.pop("enum")
            else:
                node["enum"] = values

        cleaned: dict[str, Any] = {}
        for key, value in node.items():
            if key in self.unsupported_keywords:
                continue
            if key in self.hinted_keywords:
                hints.append(f"{key}: {_format_hint_value(value)}")
                continue
            if key == "properties" and isinstance(value, Mapping):
                cleaned[key] = {
                    name: self._clean(prop, definitions, depth)
                    if isinstance(prop, Mapping)
                    else {"type": "string"}
                    for name, prop in value.items()
                }
            elif key == "items":
                if isinstance(value, Mapping):
                    cleaned[key] = self._clean(value, definitions, depth)
                elif isinstance(value, list) and value:
                    # Tuple validation: keep the first item schema.
                    first = value[0] if isinstance(value[0], Mapping) else {}
                    cleaned[key] = self._clean(first, definitions, depth)
            elif key == "required" and isinstance(value, list):
                cleaned[key] = list(value)
            elif isinstance(value, Mapping) and key not in ("description",):
                cleaned[key] = self._clean(value, definitions, depth)
            else:
                cleaned[key] = value

        if "required" in cleaned:
            props = cleaned.get("properties") or {}
            required = [name for name in cleaned["required"] if name in props]
            if required:
                cleaned["required"] = required
            else:
                cleaned.pop("required")

        if "properties" in cleaned and "type" not in cleaned:
            cleaned["type"] = "object"
        if cleaned.get("type") == "array" and "items" not in cleaned:
            cleaned["items"] = {"type": "string"}

        _append_hint(cleaned, ", ".join(hints))
        return cleaned

    def _merge_all_of(
        self,
        node: dict[str, Any],
        parts: list[Any],
        definitions: Mapping[str, Any],
        depth: int,
    ) -> dict[str, Any]:
        merged = dict(node)
        properties: dict[str, Any] = dict(merged.get("properties") or {})
        required: list[str] = list(merged.get("required") or [])
        for part in parts:
            if not isinstance(part, Mapping):
                continue
            resolved = self._clean(part, definitions, depth + 1)
            properties.update(resolved.pop("properties", {}) or {})
            for name in resolved.pop("required", []) or []:
                if name not in required:
                    required.append(name)
            for key, value in resolved.items():
                merged.setdefault(key, value)
        if properties:
            merged["properties"] = properties
            merged.setdefault("type", "object")
        if required:
            merged["required"] = required
        return merged

    def _collapse_union(
        self,
        node: dict[str, Any],
        options: list[Any],
        definitions: Mapping[str, Any],
        depth: int,
    ) -> tuple[dict[str, Any], str]:
        cleaned_options = [
            self._clean(option, definitions, depth + 1)
            for option in options
            if isinstance(option, Mapping)
        ]
        non_null = [o for o in cleaned_options if o.get("type") != "null"]
        nullable = len(non_null) != len(cleaned_options)
        if not non_null:
            return node, "nullable" if nullable else ""

        def score(option: Mapping[str, Any]) -> int:
            if option.get("type") == "object" or "properties" in option:
                return 3
            if option.get("type") == "array":
                return 2
            return 1 if option.get("type") else 0

        best = max(non_null, key=score)
        merged = dict(node)
        for key, value in best.items():
            if key == "description" and merged.get("description"):
                continue
            merged.setdefault(key, value)

        labels = []
        for option in non_null:
            label = option.get("type") or "any"
            if label not in labels:
                labels.append(str(label))
        hint_parts = []
        if len(labels) > 1:
            hint_parts.append(f"Accepts: {' | '.join(labels)}")
        if nullable:
            hint_parts.append("nullable")
        return merged, ", ".join(hint_parts)


_DEFAULT_SANITIZER = SchemaSanitizer()


def sanitize_schema(
    schema: Optional[Mapping[str, Any]],
    sanitizer: Optional[SchemaSanitizer] = None,
) -> dict[str, Any]:
    """Sanitize a schema with the given (or default) sanitizer."""
    return (sanitizer or _DEFAULT_SANITIZER).sanitize(schema)
