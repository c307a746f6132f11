"""Response shapes expected from the AI collaborator. Untrusted until sanitised."""

from pydantic import BaseModel, Field, field_validator


class AIClassification(BaseModel):
    document_type: str = Field(..., description="Document type label as returned by the model")
    confidence: float = Field(0, description="0-1 or 0-100, normalised by the classifier")
    reasoning: str = ""


class AIExtraction(BaseModel):
    booking_number: str | None = None
    bl_number: str | None = None
    mbl_number: str | None = None
    hbl_number: str | None = None
    container_numbers: list[str] = Field(default_factory=list)
    si_cutoff: str | None = None
    vgm_cutoff: str | None = None
    cargo_cutoff: str | None = None
    gate_cutoff: str | None = None
    etd: str | None = None
    eta: str | None = None
    vessel_name: str | None = None
    voyage_number: str | None = None
    port_of_loading: str | None = None
    port_of_discharge: str | None = None
    place_of_receipt: str | None = None
    place_of_delivery: str | None = None
    shipper: str | None = None
    consignee: str | None = None

    @field_validator("container_numbers", mode="before")
    @classmethod
    def _listify(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_scalars(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value
