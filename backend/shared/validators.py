"""Validation helpers shared by settings classes."""

import json
from typing import Any

from pydantic.fields import FieldInfo
from pydantic_settings import EnvSettingsSource


def parse_string_list(value: str | list[str]) -> list[str]:
    """Parse a list of strings given either as a list, a JSON array, or CSV.

    An empty string or an empty JSON array yields an empty list. Malformed
    JSON or a JSON value that is not an array of strings raises ValueError.
    """
    if isinstance(value, list):
        return value

    stripped = value.strip()
    if not stripped:
        return []

    if stripped.startswith("["):
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON array: {e}") from e
        if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
            raise ValueError("JSON value must be an array of strings")
        return parsed

    return [item.strip() for item in stripped.split(",") if item.strip()]


class StringListEnvSettingsSource(EnvSettingsSource):
    """Env source that hands raw strings for list fields to the field validators.

    pydantic-settings JSON-decodes list-typed env values before validators
    run, which breaks the CSV form. Fields named in ``string_list_fields``
    skip that decoding.
    """

    string_list_fields: frozenset[str] = frozenset({"cors_origins"})

    def prepare_field_value(
        self,
        field_name: str,
        field: FieldInfo,
        value: Any,  # noqa: ANN401
        value_is_complex: bool,  # noqa: FBT001
    ) -> Any:  # noqa: ANN401
        if field_name in self.string_list_fields and isinstance(value, str):
            return value
        return super().prepare_field_value(field_name, field, value, value_is_complex)
