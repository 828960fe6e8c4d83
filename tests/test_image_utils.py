"""Tests for aHash computation, similarity and HEIC conversion."""
import itertools
import re
from io import BytesIO

import pytest
from PIL import Image

from mediacache.errors import ConversionError, HashComputationError, ValidationError
from mediacache.image_utils import (
    are_similar_images,
    compute_image_hash,
    convert_heic_to_jpeg,
    hamming_distance,
    is_hashable_content_type,
    is_heic_content,
    is_image_content_type,
)

HEX16 = re.compile(r"^[0-9a-f]{16}$")


def test_hash_is_16_lowercase_hex(make_image):
    image_hash = compute_image_hash(make_image("gradient"))
    assert HEX16.match(image_hash)


def test_hash_is_deterministic(make_image):
    data = make_image("gradient", "JPEG")
    assert compute_image_hash(data) == compute_image_hash(data)


def test_hash_bit_order(make_image):
    # Dark left half, bright right half: each row reads 00001111
    assert compute_image_hash(make_image("left-right")) == "0f0f0f0f0f0f0f0f"
    # Bright top half: first four rows set
    assert compute_image_hash(make_image("top-bottom")) == "ffffffff00000000"


def test_uniform_image_hashes_to_zero(make_image):
    # No pixel is strictly above the mean
    assert compute_image_hash(make_image("uniform")) == "0000000000000000"


def test_hash_survives_reencoding(make_image):
    for pattern in ("left-right", "gradient"):
        png_hash = compute_image_hash(make_image(pattern, "PNG"))
        jpeg_hash = compute_image_hash(make_image(pattern, "JPEG"))
        assert hamming_distance(png_hash, jpeg_hash) <= 5
        assert are_similar_images(png_hash, jpeg_hash)


def test_distinct_images_are_not_similar(make_image):
    patterns = ["left-right", "right-left", "top-bottom", "bottom-top", "uniform"]
    hashes = {p: compute_image_hash(make_image(p)) for p in patterns}
    assert len(set(hashes.values())) == len(patterns)
    for a, b in itertools.combinations(patterns, 2):
        assert not are_similar_images(hashes[a], hashes[b]), (a, b)


def test_hash_accepts_palette_and_alpha_images(make_image):
    from io import BytesIO

    from PIL import Image

    img = Image.open(BytesIO(make_image("left-right"))).convert("RGBA")
    buf = BytesIO()
    img.save(buf, "PNG")
    assert compute_image_hash(buf.getvalue()) == "0f0f0f0f0f0f0f0f"

    buf = BytesIO()
    Image.open(BytesIO(make_image("left-right"))).convert("P").save(buf, "GIF")
    assert compute_image_hash(buf.getvalue()) == "0f0f0f0f0f0f0f0f"


def test_corrupt_bytes_raise(make_image):
    with pytest.raises(HashComputationError):
        compute_image_hash(b"not an image at all")

    data = make_image("gradient", "JPEG")
    truncated = data[: len(data) // 2]
    with pytest.raises(HashComputationError):
        compute_image_hash(truncated)


def test_hash_errors_are_not_retryable():
    assert HashComputationError.retryable is False


def test_hamming_distance():
    assert hamming_distance("0f0f0f0f0f0f0f0f", "0f0f0f0f0f0f0f0f") == 0
    assert hamming_distance("0000000000000000", "ffffffffffffffff") == 64
    assert hamming_distance("0000000000000000", "0000000000000003") == 2


def test_hamming_distance_rejects_bad_input():
    with pytest.raises(ValidationError):
        hamming_distance("abc", "abcd")
    with pytest.raises(ValidationError):
        hamming_distance("zzzz", "0000")


def test_similarity_threshold():
    base = "0000000000000000"
    assert are_similar_images(base, "000000000000001f")  # 5 bits
    assert not are_similar_images(base, "000000000000003f")  # 6 bits
    assert are_similar_images(base, "000000000000003f", threshold=6)


@pytest.mark.parametrize(
    "content_type,expected",
    [
        ("image/jpeg", True),
        ("IMAGE/PNG; charset=binary", True),
        ("video/mp4", False),
        ("application/octet-stream", False),
        (None, False),
        ("", False),
    ],
)
def test_is_image_content_type(content_type, expected):
    assert is_image_content_type(content_type) is expected


@pytest.mark.parametrize(
    "content_type,expected",
    [
        ("image/jpeg", True),
        ("image/png; charset=binary", True),
        ("image/webp", True),
        ("image/svg+xml", False),
        ("image/heic", False),
        ("text/plain", False),
        (None, False),
    ],
)
def test_is_hashable_content_type(content_type, expected):
    assert is_hashable_content_type(content_type) is expected


def test_is_heic_content():
    assert is_heic_content("https://cdn.example/a", "image/heic")
    assert is_heic_content("https://cdn.example/a", "image/HEIF; q=1")
    assert is_heic_content("https://cdn.example/IMG_0001.HEIC?sig=1", "application/octet-stream")
    assert not is_heic_content("https://cdn.example/a.jpg", "image/jpeg")
    assert not is_heic_content("https://cdn.example/heic/a.jpg", "image/jpeg")


def test_convert_heic_to_jpeg(make_image):
    jpeg = convert_heic_to_jpeg(make_image("left-right", "HEIF"))

    image = Image.open(BytesIO(jpeg))
    assert image.format == "JPEG"
    assert image.size == (64, 64)
    assert are_similar_images(compute_image_hash(jpeg), compute_image_hash(make_image("left-right")))


def test_convert_rejects_garbage():
    with pytest.raises(ConversionError) as exc_info:
        convert_heic_to_jpeg(b"\x00\x00\x00\x18ftypheic truncated")
    assert not exc_info.value.retryable
