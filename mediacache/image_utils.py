"""Image hashing utilities: perceptual hashing, similarity checks and HEIC conversion."""
from io import BytesIO
from typing import Optional
from urllib.parse import urlparse

from PIL import Image, UnidentifiedImageError
from pillow_heif import register_heif_opener

from mediacache.errors import ConversionError, HashComputationError, ValidationError
from mediacache.settings import settings

register_heif_opener()

HEIC_CONTENT_TYPES = frozenset({"image/heic", "image/heif", "image/heic-sequence", "image/heif-sequence"})

# Raster formats Pillow decodes; bytes of these types that fail to decode are corrupt
RASTER_CONTENT_TYPES = frozenset({
    "image/jpeg",
    "image/jpg",
    "image/pjpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/bmp",
    "image/x-ms-bmp",
    "image/tiff",
    "image/x-icon",
    "image/vnd.microsoft.icon",
})

JPEG_QUALITY = 92


def _base_content_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def is_image_content_type(content_type: Optional[str]) -> bool:
    """True for ``image/*`` content types (parameters ignored)."""
    return _base_content_type(content_type).startswith("image/")


def is_hashable_content_type(content_type: Optional[str]) -> bool:
    """True when the content type is a raster format the hash can be computed for."""
    return _base_content_type(content_type) in RASTER_CONTENT_TYPES


def is_heic_content(url: str, content_type: Optional[str]) -> bool:
    """HEIC/HEIF by content type or by the URL path's extension."""
    if _base_content_type(content_type) in HEIC_CONTENT_TYPES:
        return True
    path = urlparse(url).path.lower()
    return path.endswith((".heic", ".heif"))


def convert_heic_to_jpeg(data: bytes, quality: int = JPEG_QUALITY) -> bytes:
    """
    Re-encode HEIC/HEIF bytes as JPEG.

    Raises:
        ConversionError: If the bytes cannot be decoded or re-encoded
    """
    try:
        image = Image.open(BytesIO(data))
        image.load()
        buf = BytesIO()
        image.convert("RGB").save(buf, "JPEG", quality=quality)
    except (UnidentifiedImageError, OSError, ValueError, RuntimeError, Image.DecompressionBombError) as e:
        raise ConversionError(f"HEIC conversion failed: {e}") from e
    return buf.getvalue()


def open_image_from_bytes(data: bytes) -> Image.Image:
    """
    Open and fully decode a PIL Image from bytes.

    Raises:
        HashComputationError: If the bytes are not a decodable image
    """
    try:
        image = Image.open(BytesIO(data))
        # Image.open is lazy; force decoding so truncated files fail here
        image.load()
        return image
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise HashComputationError(f"Invalid image data: {e}") from e


def compute_image_hash(data: bytes, hash_size: int = None) -> str:
    """
    Compute perceptual hash (aHash) of image bytes.

    aHash (Average Hash):
    1. Resize image to hash_size x hash_size (aspect ratio ignored)
    2. Convert to grayscale
    3. Compute average pixel value
    4. Create hash: 1 if pixel > average, 0 otherwise (raster order, MSB first)
    5. Return as zero-padded lowercase hex string

    Args:
        data: Raw image bytes
        hash_size: Size for hash computation (default from settings)

    Returns:
        Hex string of perceptual hash (16 chars for the default 8x8 grid)

    Raises:
        HashComputationError: If the bytes cannot be decoded or resized
    """
    if hash_size is None:
        hash_size = settings.PHASH_SIZE

    image = open_image_from_bytes(data)
    try:
        if image.mode not in ("L", "RGB"):
            # Palette/alpha/CMYK modes: normalise before resampling
            image = image.convert("RGB")
        img = image.resize((hash_size, hash_size), Image.Resampling.LANCZOS)
        img = img.convert("L")  # Grayscale
        pixels = list(img.getdata())
    except (OSError, ValueError) as e:
        raise HashComputationError(f"Failed to resize image: {e}") from e

    avg = sum(pixels) / len(pixels)

    hash_int = 0
    for pixel in pixels:
        hash_int = (hash_int << 1) | (1 if pixel > avg else 0)

    return format(hash_int, f"0{hash_size * hash_size // 4}x")


def hamming_distance(hash1: str, hash2: str) -> int:
    """
    Compute Hamming distance between two perceptual hashes.

    Returns:
        Number of differing bits (0 = identical, 64 = maximally different for 8x8 hashes)

    Raises:
        ValidationError: If the hashes differ in length or are not hex
    """
    if len(hash1) != len(hash2):
        raise ValidationError(
            "Hashes must be the same length",
            details={"lengths": [len(hash1), len(hash2)]},
        )
    try:
        xor = int(hash1, 16) ^ int(hash2, 16)
    except ValueError as e:
        raise ValidationError(f"Hashes must be hexadecimal: {e}") from e
    return bin(xor).count("1")


def are_similar_images(hash1: str, hash2: str, threshold: int = None) -> bool:
    """
    Check if two perceptual hashes represent near-duplicate images.

    The default threshold tolerates recompression and small crops; compare the
    hashes for equality when an exact match is needed.
    """
    if threshold is None:
        threshold = settings.PHASH_HAMMING_THRESHOLD

    return hamming_distance(hash1, hash2) <= threshold
