"""
Structural parameter schemas for tools.

A tool declares its parameters as a list of Param entries. ParameterSchema
compiles them into a pydantic model once, at startup, and reuses that model
to validate every call and to publish the JSON Schema shown in tools/list.

    ParameterSchema("generateImage", [
        Param("prompt", ParamKind.STRING),
        Param("steps", ParamKind.INTEGER, minimum=4, maximum=8, default=4),
    ])

Validation is strict: a string is never coerced to a number, a float is
never truncated to an integer, and booleans are not numbers.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model


class ParamKind(str, Enum):
    NUMBER = "number"
    INTEGER = "integer"
    STRING = "string"
    ENUM = "enum"


class InvalidParametersError(Exception):
    """
    Raised when raw parameters do not satisfy a ParameterSchema.

    Attributes:
        errors: One {"field": ..., "reason": ...} entry per violation
    """

    def __init__(self, errors: list[dict[str, str]]):
        self.errors = errors
        summary = "; ".join(f"{e['field']}: {e['reason']}" for e in errors)
        super().__init__(summary)


@dataclass(frozen=True)
class Param:
    """
    One declared parameter.

    A parameter without a default is required. Bounds apply to NUMBER and
    INTEGER kinds, choices to ENUM.
    """

    name: str
    kind: ParamKind
    description: str = ""
    minimum: float | None = None
    maximum: float | None = None
    default: Any = ...
    choices: tuple[str, ...] = ()

    @property
    def required(self) -> bool:
        return self.default is ...


_BASE_TYPES: dict[ParamKind, type] = {
    ParamKind.NUMBER: float,
    ParamKind.INTEGER: int,
    ParamKind.STRING: str,
}


def _field_definition(param: Param) -> tuple[Any, Any]:
    constraints: dict[str, Any] = {}
    if param.kind is ParamKind.ENUM:
        if not param.choices:
            raise ValueError(f"Enum parameter '{param.name}' declares no choices")
        # Literal already matches exactly; pydantic rejects strict= on it.
        annotation: Any = Literal[param.choices]
    else:
        annotation = _BASE_TYPES[param.kind]
        constraints["strict"] = True

    if param.description:
        constraints["description"] = param.description
    if param.minimum is not None:
        constraints["ge"] = param.minimum
    if param.maximum is not None:
        constraints["le"] = param.maximum

    return annotation, Field(param.default, **constraints)


class ParameterSchema:
    """A compiled, immutable parameter schema."""

    def __init__(self, tool_name: str, params: Sequence[Param] = ()):
        self.params: tuple[Param, ...] = tuple(params)
        fields = {p.name: _field_definition(p) for p in self.params}
        # Unknown keys are dropped rather than rejected, like zod's default
        # object parsing on the client side of the protocol.
        self._model: type[BaseModel] = create_model(  # type: ignore[call-overload]
            f"{tool_name}_Parameters",
            __config__=ConfigDict(extra="ignore", frozen=True),
            **fields,
        )

    def validate(self, raw: Mapping[str, Any] | None) -> dict[str, Any]:
        """
        Validate raw call arguments and apply defaults.

        Returns:
            A new dict holding every declared parameter

        Raises:
            InvalidParametersError: If a field is missing, mistyped or out of bounds
        """
        if raw is None:
            raw = {}
        if not isinstance(raw, Mapping):
            raise InvalidParametersError(
                [{"field": "<arguments>", "reason": "arguments must be an object"}]
            )

        try:
            parsed = self._model.model_validate(dict(raw))
        except ValidationError as e:
            raise InvalidParametersError(
                [
                    {
                        "field": ".".join(str(part) for part in err["loc"]) or "<arguments>",
                        "reason": err["msg"],
                    }
                    for err in e.errors()
                ]
            ) from e

        return parsed.model_dump()

    def json_schema(self) -> dict[str, Any]:
        """JSON Schema for the parameters, as published in tools/list."""
        return self._model.model_json_schema()
