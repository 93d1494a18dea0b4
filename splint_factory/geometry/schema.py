"""Parameter schemas of named geometries and validation of job inputs.

A named geometry stores its inputs as a JSON array such as::

    [
      {"InputName": "wrist_width", "InputDescription": "Wrist width (mm)",
       "InputType": "Float", "NumberMin": 30, "NumberMax": 120},
      {"InputName": "label", "InputDescription": "Engraved label",
       "InputType": "Text", "TextMinLen": 0, "TextMaxLen": 12}
    ]

The key names are consumed verbatim by the external geometry processor.
Geometry jobs carry a JSON object mapping every ``InputName`` to a value that
must satisfy the declared type and bounds.
"""

from __future__ import annotations

import dataclasses
import json
import math
import re
from typing import Any

INPUT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
INPUT_NAME_MAX_LENGTH = 50
INPUT_DESCRIPTION_MAX_LENGTH = 250
MAX_PARAMETERS = 50
INPUT_TYPES = ("Float", "Integer", "Text")


class ParameterSchemaError(ValueError):
    """Raised when a geometry parameter schema is malformed."""


class ParameterDataError(ValueError):
    """Raised when job input values do not satisfy the parameter schema."""


@dataclasses.dataclass(frozen=True)
class ParameterDefinition:
    name: str
    description: str
    input_type: str
    number_min: float | None = None
    number_max: float | None = None
    text_min_len: int | None = None
    text_max_len: int | None = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "InputName": self.name,
            "InputDescription": self.description,
            "InputType": self.input_type,
        }
        if self.input_type == "Text":
            data["TextMinLen"] = self.text_min_len
            data["TextMaxLen"] = self.text_max_len
        else:
            if self.number_min is not None:
                data["NumberMin"] = self.number_min
            if self.number_max is not None:
                data["NumberMax"] = self.number_max
        return data


def _is_number(value: object) -> bool:
    # JSON booleans decode to bool, which is an int subclass.
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    return False


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def _parse_definition(entry: object, index: int) -> ParameterDefinition:
    if not isinstance(entry, dict):
        raise ParameterSchemaError(f"Parameter #{index + 1} must be an object")

    name = entry.get("InputName")
    description = entry.get("InputDescription")
    input_type = entry.get("InputType")
    if not name or not description or not input_type:
        raise ParameterSchemaError(
            "Each parameter must have InputName, InputDescription, and InputType"
        )
    if not isinstance(name, str) or not INPUT_NAME_PATTERN.match(name) or len(name) > INPUT_NAME_MAX_LENGTH:
        raise ParameterSchemaError(
            f'InputName "{name}" must contain only letters (a-z, A-Z), numbers (0-9), '
            f"and underscores (_), up to {INPUT_NAME_MAX_LENGTH} characters"
        )
    if not isinstance(description, str) or len(description) > INPUT_DESCRIPTION_MAX_LENGTH:
        raise ParameterSchemaError(
            f"InputDescription of {name} must be at most {INPUT_DESCRIPTION_MAX_LENGTH} characters"
        )
    if input_type not in INPUT_TYPES:
        raise ParameterSchemaError(f"Invalid InputType: {input_type}")

    if input_type == "Text":
        min_len = entry.get("TextMinLen")
        max_len = entry.get("TextMaxLen")
        if not _is_number(min_len) or not _is_number(max_len):
            raise ParameterSchemaError("Text parameters must have TextMinLen and TextMaxLen")
        if min_len < 0:
            raise ParameterSchemaError("TextMinLen must be >= 0")
        if max_len < min_len:
            raise ParameterSchemaError("TextMaxLen must be >= TextMinLen")
        return ParameterDefinition(
            name=name,
            description=description,
            input_type=input_type,
            text_min_len=int(min_len),
            text_max_len=int(max_len),
        )

    number_min = entry.get("NumberMin")
    number_max = entry.get("NumberMax")
    for label, bound in (("NumberMin", number_min), ("NumberMax", number_max)):
        if bound is not None and not _is_number(bound):
            raise ParameterSchemaError(f"{label} of {name} must be a number")
    if number_min is not None and number_max is not None and number_max < number_min:
        raise ParameterSchemaError("NumberMax must be >= NumberMin")
    return ParameterDefinition(
        name=name,
        description=description,
        input_type=input_type,
        number_min=number_min,
        number_max=number_max,
    )


def validate_parameter_schema(raw: str) -> list[ParameterDefinition]:
    """Parse and validate the JSON text of a parameter schema.

    Raises:
        ParameterSchemaError: With a message suitable for an HTTP 400 response.
    """

    try:
        entries = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ParameterSchemaError("Schema must be valid JSON") from exc
    if not isinstance(entries, list):
        raise ParameterSchemaError("Schema must be an array")
    if len(entries) > MAX_PARAMETERS:
        raise ParameterSchemaError(f"Schema may define at most {MAX_PARAMETERS} parameters")

    definitions = [_parse_definition(entry, index) for index, entry in enumerate(entries)]
    seen: set[str] = set()
    for definition in definitions:
        if definition.name in seen:
            raise ParameterSchemaError(f"Duplicate InputName: {definition.name}")
        seen.add(definition.name)
    return definitions


def _check_value(definition: ParameterDefinition, value: object) -> None:
    name = definition.name
    if definition.input_type in ("Float", "Integer"):
        if definition.input_type == "Float" and not _is_number(value):
            raise ParameterDataError(f"Parameter {name} must be a number")
        if definition.input_type == "Integer" and not (
            _is_number(value) and float(value).is_integer()
        ):
            raise ParameterDataError(f"Parameter {name} must be an integer")
        if definition.number_min is not None and value < definition.number_min:
            raise ParameterDataError(
                f"Parameter {name} must be >= {_format_number(definition.number_min)}"
            )
        if definition.number_max is not None and value > definition.number_max:
            raise ParameterDataError(
                f"Parameter {name} must be <= {_format_number(definition.number_max)}"
            )
        return

    if not isinstance(value, str):
        raise ParameterDataError(f"Parameter {name} must be a string")
    if definition.text_min_len is not None and len(value) < definition.text_min_len:
        raise ParameterDataError(
            f"Parameter {name} must be at least {definition.text_min_len} characters"
        )
    if definition.text_max_len is not None and len(value) > definition.text_max_len:
        raise ParameterDataError(
            f"Parameter {name} must be no more than {definition.text_max_len} characters"
        )


def validate_parameter_data(
    schema: list[ParameterDefinition] | str, raw: str
) -> dict[str, Any]:
    """Validate the JSON object ``raw`` against ``schema`` and return the values.

    ``schema`` may be given as parsed definitions or as the stored JSON text.
    Extra keys are ignored.
    """

    if isinstance(schema, str):
        try:
            schema = validate_parameter_schema(schema)
        except ParameterSchemaError as exc:
            raise ParameterDataError("Invalid geometry schema format") from exc
    try:
        values = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ParameterDataError("GeometryInputParameterData must be valid JSON") from exc
    if not isinstance(values, dict):
        raise ParameterDataError("GeometryInputParameterData must be a JSON object")

    for definition in schema:
        if definition.name not in values:
            raise ParameterDataError(f"Missing required parameter: {definition.name}")
        _check_value(definition, values[definition.name])
    return values


__all__ = [
    "INPUT_NAME_PATTERN",
    "INPUT_TYPES",
    "ParameterDataError",
    "ParameterDefinition",
    "ParameterSchemaError",
    "validate_parameter_data",
    "validate_parameter_schema",
]
