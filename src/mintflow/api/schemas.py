"""Pydantic request schemas for the HTTP API.

These only check shape at the HTTP edge. Ranges, sums and asset checks stay
in mintflow.pipeline.validator so the CLI and the API reject the same inputs
with the same reasons.
"""

from __future__ import annotations

from typing import List, Optional, Union

from pydantic import BaseModel, Field

from mintflow.pipeline.models import Attribute, Creator, TokenFields


class CreatorModel(BaseModel):
    address: str = Field(..., description="Creator wallet address")
    share: int = Field(..., description="Royalty share percentage (all shares sum to 100)")


class AttributeModel(BaseModel):
    trait_type: str
    value: Union[str, int, float, bool]


class TokenFieldsModel(BaseModel):
    name: str
    symbol: str
    description: str = ""
    seller_fee_basis_points: int = Field(default=0, description="Royalty in basis points, 0..10000")
    creators: List[CreatorModel] = Field(default_factory=list)
    attributes: List[AttributeModel] = Field(default_factory=list)
    external_url: str = ""
    max_supply: Optional[int] = None

    # Unknown keys are ignored (forward compatible)
    model_config = {"extra": "ignore"}

    def to_token_fields(self) -> TokenFields:
        return TokenFields(
            name=self.name.strip(),
            symbol=self.symbol.strip(),
            description=self.description.strip(),
            seller_fee_basis_points=int(self.seller_fee_basis_points),
            creators=tuple(Creator(address=c.address.strip(), share=int(c.share)) for c in self.creators),
            attributes=tuple(Attribute(trait_type=a.trait_type.strip(), value=a.value) for a in self.attributes),
            external_url=self.external_url.strip(),
            max_supply=self.max_supply,
        )
