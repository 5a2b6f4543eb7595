import pytest

from conftest import auth
from errors import ValidationError
from media import public_id_from_url, validate_image


def test_public_id_from_url():
    url = "https://res.cloudinary.com/demo/image/upload/v1712/shaaka/products/abc123.jpg"
    assert public_id_from_url(url) == "shaaka/products/abc123"
    assert public_id_from_url("") is None
    assert public_id_from_url(None) is None


def test_validate_image_limits():
    assert validate_image("image/png", 1024, "products")["folder"] == "shaaka/products"
    validate_image("image/jpeg", 5 * 1024 * 1024, "products")
    with pytest.raises(ValidationError):
        validate_image("image/jpeg", 5 * 1024 * 1024 + 1, "products")
    with pytest.raises(ValidationError):
        validate_image("image/jpeg", 3 * 1024 * 1024, "categories")
    with pytest.raises(ValidationError):
        validate_image("application/pdf", 10, "products")
    with pytest.raises(ValidationError):
        validate_image("image/png", 10, "banners")


def test_upload_endpoint(client, admin, media):
    res = client.post("/api/uploads/images?kind=categories", headers=auth(admin),
                      files={"file": ("leaf.png", b"\x89PNG fake", "image/png")})
    assert res.status_code == 201
    assert res.json()["data"]["public_id"] == "shaaka/categories/img1"


def test_upload_rejects_non_images(client, admin, media):
    res = client.post("/api/uploads/images", headers=auth(admin),
                      files={"file": ("notes.txt", b"hello", "text/plain")})
    assert res.status_code == 400
    assert media.uploaded == []


def test_upload_needs_catalog_editor(client, customer):
    res = client.post("/api/uploads/images", headers=auth(customer),
                      files={"file": ("leaf.png", b"\x89PNG fake", "image/png")})
    assert res.status_code == 403


def test_delete_by_url(client, vendor, media):
    url = "https://res.cloudinary.com/demo/image/upload/v1/shaaka/products/img9.webp"
    assert client.post("/api/uploads/images/delete", headers=auth(vendor), json={"url": url}).status_code == 200
    assert media.deleted == ["shaaka/products/img9"]
    assert client.post("/api/uploads/images/delete", headers=auth(vendor), json={}).status_code == 400
