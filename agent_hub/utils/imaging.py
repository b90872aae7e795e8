from io import BytesIO
from typing import Optional

from PIL import Image


def compute_dhash(image_bytes: Optional[bytes]) -> int:
    """64-bit difference hash of a screenshot; 0 when the bytes cannot be decoded."""
    if not image_bytes:
        return 0
    try:
        img = Image.open(BytesIO(image_bytes)).convert("L").resize((9, 8), Image.Resampling.LANCZOS)
    except Exception as e:
        print(f"[Imaging] dHash failed: {e}")
        return 0
    pixels = list(img.getdata())
    bits = 0
    for row in range(8):
        for col in range(8):
            if pixels[row * 9 + col] > pixels[row * 9 + col + 1]:
                bits |= 1 << (row * 8 + col)
    return bits


def page_changed(previous: Optional[int], current: int) -> bool:
    """Unknown hashes count as a change."""
    if previous is None or current == 0:
        return True
    return previous != current
