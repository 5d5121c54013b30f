"""Tool descriptors and their translation to live function declarations.

Tool providers describe their tools with loosely-typed JSON schemas. Those
schemas are parsed into ``ParameterSchema`` values once, at the descriptor
boundary, and everything downstream works with the typed form.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ToolSchemaError


class SchemaType(Enum):
    """Parameter types understood by the live service."""

    OBJECT = "object"
    ARRAY = "array"
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"


_SCHEMA_TYPES: dict[str, SchemaType] = {t.value: t for t in SchemaType}


def _parse_type(raw: Mapping[str, Any]) -> SchemaType:
    """Resolve the schema type, defaulting unknown types to string."""
    value = raw.get("type")
    if isinstance(value, list):
        # ["string", "null"] style unions
        value = next((v for v in value if v != "null"), None)
    if value is None:
        return SchemaType.OBJECT if "properties" in raw else SchemaType.STRING
    if not isinstance(value, str):
        raise ToolSchemaError(f"Schema type must be a string, got {value!r}")
    return _SCHEMA_TYPES.get(value, SchemaType.STRING)


@dataclass(frozen=True)
class ParameterSchema:
    """Tagged JSON-schema value for tool parameters.

    Attributes:
        type: Schema type tag.
        description: Human-readable description.
        format: Optional format hint (e.g. "date-time").
        enum: Allowed values, if restricted.
        items: Element schema for arrays.
        properties: Member schemas for objects.
        required: Required member names for objects.
    """

    type: SchemaType = SchemaType.STRING
    description: str | None = None
    format: str | None = None
    enum: tuple[Any, ...] | None = None
    items: ParameterSchema | None = None
    properties: dict[str, ParameterSchema] = field(default_factory=lambda: {})
    required: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Any) -> ParameterSchema:
        """Parse and validate a JSON-schema-like mapping.

        Raises:
            ToolSchemaError: If the schema is structurally invalid.
        """
        if not isinstance(raw, Mapping):
            raise ToolSchemaError(f"Schema must be an object, got {type(raw).__name__}")

        description = raw.get("description")
        if description is not None and not isinstance(description, str):
            raise ToolSchemaError("Schema description must be a string")

        schema_format = raw.get("format")
        if schema_format is not None and not isinstance(schema_format, str):
            raise ToolSchemaError("Schema format must be a string")

        enum: tuple[Any, ...] | None = None
        if "enum" in raw:
            if not isinstance(raw["enum"], (list, tuple)):
                raise ToolSchemaError("Schema enum must be a list")
            enum = tuple(raw["enum"])

        items: ParameterSchema | None = None
        if raw.get("items") is not None:
            items = cls.from_dict(raw["items"])

        properties_raw = raw.get("properties")
        if properties_raw is None:
            properties_raw = {}
        if not isinstance(properties_raw, Mapping):
            raise ToolSchemaError("Schema properties must be an object")
        properties = {
            str(name): cls.from_dict(value) for name, value in properties_raw.items()
        }

        required_raw = raw.get("required")
        if required_raw is None:
            required_raw = []
        if not isinstance(required_raw, (list, tuple)) or not all(
            isinstance(name, str) for name in required_raw
        ):
            raise ToolSchemaError("Schema required must be a list of strings")

        return cls(
            type=_parse_type(raw),
            description=description,
            format=schema_format,
            enum=enum,
            items=items,
            properties=properties,
            required=tuple(required_raw),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the live service's OpenAPI-style schema shape."""
        data: dict[str, Any] = {"type": self.type.value}
        if self.description is not None:
            data["description"] = self.description
        if self.format is not None:
            data["format"] = self.format
        if self.enum is not None:
            data["enum"] = list(self.enum)
        if self.items is not None:
            data["items"] = self.items.to_dict()
        if self.type is SchemaType.OBJECT:
            data["properties"] = {
                name: prop.to_dict() for name, prop in self.properties.items()
            }
            data["required"] = list(self.required)
        return data


EMPTY_OBJECT_SCHEMA = ParameterSchema(type=SchemaType.OBJECT)


@dataclass(frozen=True)
class ToolDescriptor:
    """A tool as advertised by a tool provider."""

    name: str
    description: str
    parameter_schema: ParameterSchema = EMPTY_OBJECT_SCHEMA

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ToolDescriptor:
        """Build a descriptor from an MCP-style tool listing entry.

        Accepts either ``inputSchema`` (MCP) or ``parameters`` for the schema.
        """
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            raise ToolSchemaError("Tool descriptor requires a non-empty name")

        schema_raw = raw.get("inputSchema", raw.get("parameters"))
        schema = (
            EMPTY_OBJECT_SCHEMA
            if schema_raw is None
            else ParameterSchema.from_dict(schema_raw)
        )
        return cls(
            name=name,
            description=raw.get("description") or name,
            parameter_schema=schema,
        )


@dataclass(frozen=True)
class FunctionDeclaration:
    """Function declaration in the live service's setup format."""

    name: str
    description: str
    parameters: ParameterSchema = EMPTY_OBJECT_SCHEMA

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters.to_dict(),
        }


def to_function_declaration(descriptor: ToolDescriptor) -> FunctionDeclaration:
    """Translate a provider tool descriptor 1:1 into a function declaration.

    The declaration is always an object schema. Each top-level property keeps
    its type, format, enum and items; a missing description falls back to the
    property name.
    """
    schema = descriptor.parameter_schema
    properties = {
        name: dataclasses.replace(prop, description=prop.description or name)
        for name, prop in schema.properties.items()
    }
    return FunctionDeclaration(
        name=descriptor.name,
        description=descriptor.description or f"Execute {descriptor.name}",
        parameters=ParameterSchema(
            type=SchemaType.OBJECT,
            properties=properties,
            required=schema.required,
        ),
    )


def build_function_declarations(
    descriptors: Iterable[ToolDescriptor],
) -> tuple[FunctionDeclaration, ...]:
    """Translate every descriptor, preserving order."""
    return tuple(to_function_declaration(d) for d in descriptors)
