from __future__ import annotations

import json

import pytest

from conftest import png_asset, token_fields
from mintflow.pipeline.metadata import assemble_metadata
from mintflow.pipeline.models import Asset, Attribute, ContentReference, Creator
from mintflow.pipeline.validator import parse_token_fields, validate_asset
from mintflow.runtime.errors import ValidationError
from mintflow.util.content_id import compute_content_id

MAX = 1024 * 1024


def test_shares_summing_to_100_pass() -> None:
    out = validate_asset(png_asset(), token_fields(), max_bytes=MAX)
    assert out.fields.creators[0].share == 60


def test_shares_not_summing_to_100_fail_on_creators() -> None:
    bad = token_fields(creators=(Creator("creator-a", 60), Creator("creator-b", 30)))
    with pytest.raises(ValidationError) as ei:
        validate_asset(png_asset(), bad, max_bytes=MAX)
    assert ei.value.field == "creators"
    assert "sum_to_100" in ei.value.reason
    assert ei.value.retryable is False


@pytest.mark.parametrize(
    "asset,field",
    [
        (Asset(data=b"GIF89a", mime_type="application/pdf", declared_size=6), "mime_type"),
        (Asset(data=b"", mime_type="image/png", declared_size=0), "asset"),
        (Asset(data=b"abc", mime_type="image/png", declared_size=4), "declared_size"),
        (Asset(data=b"x" * (MAX + 1), mime_type="image/png", declared_size=MAX + 1), "asset"),
    ],
)
def test_asset_checks(asset: Asset, field: str) -> None:
    with pytest.raises(ValidationError) as ei:
        validate_asset(asset, token_fields(), max_bytes=MAX)
    assert ei.value.field == field


def test_content_must_match_declared_image_type() -> None:
    gif = b"GIF89a\x01\x00\x01\x00\x00\x00\x00;"
    with pytest.raises(ValidationError) as ei:
        validate_asset(Asset(data=gif, mime_type="image/png", declared_size=len(gif)), token_fields(), max_bytes=MAX)
    assert ei.value.field == "asset"
    assert ei.value.reason == "content_does_not_match:image/png"


@pytest.mark.parametrize(
    "data,mime",
    [
        (b"GIF87a\x01\x00\x01\x00", "image/gif"),
        (b"\xff\xd8\xff\xe0\x00\x10JFIF", "image/jpeg"),
        (b"RIFF\x24\x00\x00\x00WEBPVP8 ", "image/webp"),
        (b'<?xml version="1.0"?>\n<svg xmlns="http://www.w3.org/2000/svg"/>', "image/svg+xml"),
    ],
)
def test_each_default_image_type_is_recognized(data: bytes, mime: str) -> None:
    out = validate_asset(Asset(data=data, mime_type=mime, declared_size=len(data)), token_fields(), max_bytes=MAX)
    assert out.asset.mime_type == mime


def test_operator_added_type_is_not_sniffed() -> None:
    asset = Asset(data=b"%PDF-1.7", mime_type="application/pdf", declared_size=8)
    validate_asset(asset, token_fields(), max_bytes=MAX, allowed_mime_types=("application/pdf",))


@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"name": "x" * 33}, "name"),
        ({"symbol": ""}, "symbol"),
        ({"seller_fee_basis_points": 10_001}, "seller_fee_basis_points"),
        ({"external_url": "ftp://example.com"}, "external_url"),
        ({"max_supply": -1}, "max_supply"),
        ({"creators": ()}, "creators"),
        ({"creators": (Creator("a", 50), Creator("a", 50))}, "creators"),
        ({"attributes": (Attribute("k", "v"), Attribute("k", "w"))}, "attributes"),
    ],
)
def test_field_checks(overrides: dict, field: str) -> None:
    with pytest.raises(ValidationError) as ei:
        validate_asset(png_asset(), token_fields(**overrides), max_bytes=MAX)
    assert ei.value.field == field


def test_mime_type_match_is_case_insensitive() -> None:
    asset = Asset(data=b"\x89PNG", mime_type="IMAGE/PNG", declared_size=4)
    validate_asset(asset, token_fields(), max_bytes=MAX)


def test_parse_token_fields_from_json() -> None:
    f = parse_token_fields(
        {
            "name": " Harbor ",
            "symbol": "HARB",
            "description": "d",
            "seller_fee_basis_points": "250",
            "creators": [{"address": "a", "share": 100}],
            "attributes": [{"trait_type": "palette", "value": "blue"}],
        }
    )
    assert f.name == "Harbor"
    assert f.seller_fee_basis_points == 250
    assert f.creators == (Creator("a", 100),)

    with pytest.raises(ValidationError):
        parse_token_fields({"name": "x", "creators": "nope"})
    with pytest.raises(ValidationError):
        parse_token_fields(["not", "an", "object"])


def test_metadata_is_deterministic_and_points_at_image() -> None:
    image = ContentReference.for_content_id(compute_content_id(b"image bytes"))
    a = assemble_metadata(token_fields(), image, mime_type="image/png").to_bytes()
    b = assemble_metadata(token_fields(), image, mime_type="image/png").to_bytes()
    assert a == b
    assert compute_content_id(a) == compute_content_id(b)

    body = json.loads(a)
    assert body["image"] == image.uri
    assert body["properties"]["files"] == [{"uri": image.uri, "type": "image/png"}]
    assert [c["share"] for c in body["properties"]["creators"]] == [60, 40]
    assert [x["trait_type"] for x in body["attributes"]] == ["palette", "edition"]


def test_metadata_changes_with_image() -> None:
    f = token_fields()
    one = assemble_metadata(f, ContentReference.for_content_id(compute_content_id(b"1")), mime_type="image/png")
    two = assemble_metadata(f, ContentReference.for_content_id(compute_content_id(b"2")), mime_type="image/png")
    assert one.to_bytes() != two.to_bytes()
