"""
Translation of MCP tool input schemas into runtime argument validators.

A tool's ``inputSchema`` is first turned into a small tree of tagged field
variants (``StringField``, ``NumberField``, ``BoolField``, ``ArrayField``,
``ObjectField``, ``AnyField``). The tree is then compiled into pydantic models
so call arguments get pydantic's coercion and error reporting.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, create_model

from src.mcpchat.errors import ArgumentValidationError
from src.utils.logger import get_logger

logger = get_logger("SchemaTranslator")


class SchemaField:
    """Base class of the field variants."""

    def annotation(self) -> Any:
        raise NotImplementedError


@dataclass
class StringField(SchemaField):
    def annotation(self) -> Any:
        return str


@dataclass
class NumberField(SchemaField):
    integer: bool = False

    def annotation(self) -> Any:
        return int if self.integer else Union[int, float]


@dataclass
class BoolField(SchemaField):
    def annotation(self) -> Any:
        return bool


@dataclass
class AnyField(SchemaField):
    def annotation(self) -> Any:
        return Any


@dataclass
class ArrayField(SchemaField):
    items: SchemaField = field(default_factory=StringField)

    def annotation(self) -> Any:
        return list[self.items.annotation()]


@dataclass
class ObjectField(SchemaField):
    """Object with declared properties, or a free-form mapping when none are declared."""
    fields: dict[str, SchemaField] = field(default_factory=dict)
    required: frozenset[str] = frozenset()
    free_form: bool = False
    name: str = "ToolArguments"
    _model: Optional[type[BaseModel]] = field(default=None, init=False, repr=False, compare=False)

    def annotation(self) -> Any:
        if self.free_form:
            return dict[str, Any]
        return self.compile()

    def compile(self) -> type[BaseModel]:
        """Build (once) the pydantic model validating this object.

        Properties are stored under positional attribute names and aliased to
        their wire names, so property names like ``model_config`` or ``_id``
        never collide with pydantic internals.
        """
        if self._model is None:
            definitions: dict[str, Any] = {}
            for index, (prop_name, prop) in enumerate(self.fields.items()):
                if prop_name in self.required:
                    definitions[f"field_{index}"] = (prop.annotation(), Field(alias=prop_name))
                else:
                    definitions[f"field_{index}"] = (
                        Optional[prop.annotation()],
                        Field(default=None, alias=prop_name),
                    )
            self._model = create_model(
                self.name,
                __config__=ConfigDict(extra="ignore"),
                **definitions,
            )
        return self._model


def translate_schema(schema: Any, name: str = "ToolArguments") -> ObjectField:
    """Translate a tool's top-level ``inputSchema`` into an ``ObjectField``.

    A schema without ``properties`` accepts any argument mapping.
    """
    if not isinstance(schema, dict):
        logger.debug(f"Schema for '{name}' is not a mapping, accepting any arguments")
        return ObjectField(free_form=True, name=name)
    properties = schema.get("properties")
    if properties is None:
        return ObjectField(free_form=True, name=name)
    if not isinstance(properties, dict):
        logger.debug(f"'properties' of '{name}' is not a mapping, accepting any arguments")
        return ObjectField(free_form=True, name=name)
    return _translate_object(schema, properties, name)


def _translate_object(schema: dict, properties: dict, path: str) -> ObjectField:
    required = schema.get("required") or []
    if not isinstance(required, list):
        logger.debug(f"Ignoring non-list 'required' at '{path}'")
        required = []

    fields = {
        str(prop_name): _translate_field(prop, f"{path}.{prop_name}")
        for prop_name, prop in properties.items()
    }
    # Entries naming undeclared properties are dropped
    declared = frozenset(name for name in required if name in fields)
    return ObjectField(fields=fields, required=declared, name=path)


def _translate_field(fragment: Any, path: str) -> SchemaField:
    if not isinstance(fragment, dict):
        logger.debug(f"Invalid schema fragment at '{path}', accepting anything")
        return AnyField()

    kind = fragment.get("type")
    if kind is None:
        return AnyField()
    if not isinstance(kind, str):
        # e.g. ["string", "null"]
        logger.debug(f"Unsupported type declaration {kind!r} at '{path}', accepting anything")
        return AnyField()

    if kind == "string":
        return StringField()
    if kind in ("number", "integer"):
        return NumberField(integer=kind == "integer")
    if kind == "boolean":
        return BoolField()
    if kind == "array":
        if "items" not in fragment:
            return ArrayField(StringField())
        return ArrayField(_translate_field(fragment["items"], f"{path}[]"))
    if kind == "object":
        properties = fragment.get("properties")
        if properties is None:
            return ObjectField(free_form=True)
        if not isinstance(properties, dict):
            logger.debug(f"Invalid 'properties' at '{path}', accepting anything")
            return AnyField()
        return _translate_object(fragment, properties, path)
    return AnyField()


class ArgumentValidator:
    """Validates and coerces a loosely typed argument mapping for one tool."""

    def __init__(self, root: ObjectField):
        self.root = root
        try:
            self._adapter = TypeAdapter(root.annotation())
        except Exception as e:
            logger.warning(f"⚠️ Could not compile schema '{root.name}', accepting any arguments: {e}")
            self.root = ObjectField(free_form=True, name=root.name)
            self._adapter = TypeAdapter(dict[str, Any])

    @classmethod
    def from_schema(cls, schema: Any, name: str = "ToolArguments") -> "ArgumentValidator":
        return cls(translate_schema(schema, name))

    def validate(self, arguments: Optional[dict]) -> dict[str, Any]:
        """Return the coerced arguments or raise ``ArgumentValidationError``.

        Optional fields the caller did not pass are left out of the result.
        """
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ArgumentValidationError([("", "arguments must be an object")])
        try:
            validated = self._adapter.validate_python(arguments)
        except ValidationError as e:
            problems = [
                (".".join(str(part) for part in error["loc"]), error["msg"])
                for error in e.errors()
            ]
            raise ArgumentValidationError(problems) from e
        if isinstance(validated, BaseModel):
            return validated.model_dump(by_alias=True, exclude_unset=True)
        return dict(validated)
