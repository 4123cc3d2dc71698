from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.errors import ValidationFailure


class SavePayload(BaseModel):
    """Body of a project save. All three blobs are required on every save."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    xml: str = Field(min_length=1)
    media: str = Field(min_length=1)
    thumbnail: str = Field(min_length=1)
    notes: str | None = None
    remix_id: int | None = Field(default=None, alias="remixID")

    # None keeps the current value on update (and means False on create).
    is_public: bool | None = Field(default=None, alias="ispublic")
    is_published: bool | None = Field(default=None, alias="ispublished")


class MetadataUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_public: bool | None = Field(default=None, alias="ispublic")
    is_published: bool | None = Field(default=None, alias="ispublished")
    reason: str | None = None


def parse_save_payload(data: dict | None) -> SavePayload:
    return _validate(SavePayload, data)


def parse_metadata_update(data: dict | None) -> MetadataUpdate:
    return _validate(MetadataUpdate, data)


def _validate(model: type[BaseModel], data: dict | None):
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        missing = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ValidationFailure(f"Invalid payload: {', '.join(missing)}", fields=missing) from e
