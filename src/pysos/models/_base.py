"""Base model for every persisted or published pysos record.

Every record inherits from :class:`SosBaseModel` which provides:

* ``alias_generator=to_camel`` so the durable JSON uses camelCase keys
  while Python code uses snake_case fields.
* Frozen instances: records are replaced, never mutated in place.
* :meth:`SosBaseModel.to_json` / :meth:`SosBaseModel.from_json` helpers
  that always serialize by alias.
"""

from __future__ import annotations

from typing import Any, Self

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class SosBaseModel(BaseModel):
    """Base for pysos records."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_json(self) -> str:
        """Serialize with camelCase keys, dropping nothing."""
        return self.model_dump_json(by_alias=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> Self:
        """Parse a record previously written by :meth:`to_json`.

        Raises ``pydantic.ValidationError`` on malformed JSON or on values
        that violate the model's constraints.
        """
        return cls.model_validate_json(raw)
