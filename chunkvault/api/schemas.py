"""Request bodies accepted by the chunk routes."""

from typing import Annotated, Callable

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field, StrictInt, StrictStr
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError

Byte = Annotated[StrictInt, Field(ge=0, le=255)]

# Client-facing message for a pydantic failure on each body field
FIELD_ERRORS = {
    "chunk_id": "chunk_id is required",
    "encrypted": "encrypted must be array of integers 0-255",
    "iv": "iv must be array of integers 0-255",
    "metadata": "metadata must be a string or null",
}


class ChunkUpsertRequest(BaseModel):
    """Body of ``POST /{user}/{collection}/chunks``."""

    chunk_id: Annotated[StrictStr, Field(min_length=1)]
    encrypted: list[Byte]
    iv: list[Byte]
    metadata: StrictStr | None = None


class ChunkPatchRequest(BaseModel):
    """Body of ``PATCH /{user}/{collection}/chunks/{chunk_id}``.

    Only fields present in the body are applied. ``metadata: null`` (or
    an empty string) clears metadata; leaving it out keeps it.
    """

    encrypted: list[Byte] | None = None
    iv: list[Byte] | None = None
    metadata: StrictStr | None = None

    def check_fields(self) -> None:
        """Reject combinations that pydantic cannot express.

        Raises:
            ValidationError: If ``encrypted`` or ``iv`` is explicitly null,
                or ``encrypted`` is sent without ``iv``.
        """
        supplied = self.model_fields_set

        for name in ("encrypted", "iv"):
            if name in supplied and getattr(self, name) is None:
                raise ValidationError(FIELD_ERRORS[name], field=name)

        if "encrypted" in supplied and "iv" not in supplied:
            raise ValidationError(
                "If encrypted is provided, iv must also be provided", field="iv"
            )

    def supplied_bytes(self, name: str) -> bytes | None:
        """Field as bytes, or None when it was not supplied."""
        value = getattr(self, name)
        return bytes(value) if value is not None else None


def json_body(model: type[BaseModel]) -> Callable:
    """Build a dependency that parses the request body into ``model``.

    Route-level dependencies run in declaration order after the router's,
    so the body is only read once the caller is authenticated.
    """

    async def parse(request: Request) -> BaseModel:
        raw = await request.body()
        try:
            return model.model_validate_json(raw)
        except PydanticValidationError as e:
            raise RequestValidationError(
                [
                    {**error, "loc": ("body", *error["loc"])}
                    for error in e.errors(include_url=False)
                ]
            ) from e

    return parse
