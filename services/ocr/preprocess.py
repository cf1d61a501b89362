"""Local image normalisation before recognition.

Cheap and side-effect free: fix EXIF orientation, flatten transparency onto
white, convert to grayscale and stretch contrast.
"""

import io

from PIL import Image, ImageOps, UnidentifiedImageError

from services.shared.errors import PermanentError


def preprocess_image(data: bytes, *, grayscale: bool = True, autocontrast: bool = True) -> bytes:
    """Normalise a raster image for recognition.

    Args:
        data: Encoded image bytes
        grayscale: Convert to single-channel grayscale
        autocontrast: Stretch the histogram to the full range

    Returns:
        PNG-encoded normalised image

    Raises:
        PermanentError: If the bytes are not a decodable image
    """
    try:
        with Image.open(io.BytesIO(data)) as original:
            image = ImageOps.exif_transpose(original)
            if image.mode in ("RGBA", "LA", "P"):
                rgba = image.convert("RGBA")
                background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
                image = Image.alpha_composite(background, rgba)
            image = image.convert("L" if grayscale else "RGB")
            if autocontrast:
                image = ImageOps.autocontrast(image)
            output = io.BytesIO()
            image.save(output, format="PNG")
    except (UnidentifiedImageError, OSError) as e:
        raise PermanentError(
            "Uploaded file is not a readable image", code="MALFORMED_DOCUMENT"
        ) from e
    return output.getvalue()
