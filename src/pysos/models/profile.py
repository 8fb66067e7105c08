"""Subject profile, owned by the profile form collaborator."""

from __future__ import annotations

from pydantic import ConfigDict, Field

from pysos.models._base import SosBaseModel


class SubjectProfile(SosBaseModel):
    """The two profile fields the SOS core reads.

    Any other fields the profile form stores are kept in ``model_extra``
    and written back untouched.
    """

    model_config = ConfigDict(extra="allow")

    name: str | None = None
    custom_sos_message: str | None = Field(default=None, alias="customSOSMessage")
