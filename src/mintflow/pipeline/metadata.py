# src/mintflow/pipeline/metadata.py
from __future__ import annotations

from typing import Any, Dict

from mintflow.pipeline.models import ContentReference, MetadataDocument, TokenFields

Json = Dict[str, Any]

METADATA_FILENAME = "metadata.json"


def assemble_metadata(fields: TokenFields, image_ref: ContentReference, *, mime_type: str) -> MetadataDocument:
    """Build the off-chain metadata document for a token.

    Same inputs, same bytes: no timestamps, no random ids, keys sorted on
    serialization, attribute and creator order kept as declared. A resumed
    deployment therefore re-derives the same metadata content id.
    """
    body: Json = {
        "name": fields.name,
        "symbol": fields.symbol,
        "description": fields.description,
        "seller_fee_basis_points": int(fields.seller_fee_basis_points),
        "image": image_ref.uri,
        "attributes": [a.to_json() for a in fields.attributes],
        "properties": {
            "category": "image",
            "files": [{"uri": image_ref.uri, "type": mime_type}],
            "creators": [c.to_json() for c in fields.creators],
        },
    }
    if fields.external_url:
        body["external_url"] = fields.external_url
    if fields.max_supply is not None:
        body["max_supply"] = int(fields.max_supply)
    return MetadataDocument(body=body)
