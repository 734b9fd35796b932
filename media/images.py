"""Image normalization."""

import io
import logging

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

OUTPUT_FORMAT = 'WEBP'
OUTPUT_MIME = 'image/webp'
OUTPUT_EXTENSION = 'webp'

class ImageDecodeError(ValueError):
    """Raised when bytes cannot be decoded as an image."""
    pass

def reencode_image(data: bytes, quality: int = 80) -> bytes:
    """Re-encode any supported image as WebP.

    Animated images keep only their first frame. Palette and CMYK images are
    converted to RGB(A) first since WebP does not store them.

    Args:
        data: Encoded image bytes
        quality: WebP quality, 1-100

    Returns:
        WebP bytes

    Raises:
        ImageDecodeError: If the data is not a decodable image
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.mode not in ('RGB', 'RGBA'):
                has_alpha = img.mode in ('LA', 'PA') or 'transparency' in img.info
                img = img.convert('RGBA' if has_alpha else 'RGB')

            output = io.BytesIO()
            img.save(output, format=OUTPUT_FORMAT, quality=quality)
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ImageDecodeError(f"Could not decode image: {e}")

    return output.getvalue()
