"""OCR Stage - Fallback text recovery for sources without a text layer.

Uses Tesseract OCR for scanned score reports and raster images.
Produces line-level text with an averaged confidence per line.
"""

import io
from typing import Optional, Union

import cv2
import numpy as np
import pytesseract
from PIL import Image

from psyscore.models import OCRLine


def normalize_confidence(confidence: float) -> float:
    """Map Tesseract confidence (0-100, -1 for non-words) to 0-1."""
    if confidence < 0:
        return 0.0
    if confidence > 1:
        confidence = confidence / 100.0
    return min(confidence, 1.0)


def to_grayscale(image: Union[np.ndarray, Image.Image]) -> np.ndarray:
    """Convert a PIL image or BGR/RGBA/gray array to a gray array."""
    if isinstance(image, Image.Image):
        image = np.array(image.convert("RGB"))
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    if len(image.shape) == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def load_image(raw: bytes) -> np.ndarray:
    """Decode raster bytes (PNG, JPEG, TIFF) into a gray array."""
    with Image.open(io.BytesIO(raw)) as img:
        return to_grayscale(img)


def pixmap_to_array(samples: bytes, width: int, height: int, channels: int) -> np.ndarray:
    """Wrap a rendered page buffer as an array without copying."""
    array = np.frombuffer(samples, dtype=np.uint8).reshape(height, width, channels)
    if channels == 3:
        return cv2.cvtColor(array, cv2.COLOR_RGB2GRAY)
    return to_grayscale(array)


def preprocess_for_ocr(image: np.ndarray) -> np.ndarray:
    """Binarize and denoise a gray page image to improve OCR quality.

    Args:
        image: Grayscale image.

    Returns:
        Preprocessed image.
    """
    # Binarization using Otsu's method
    _, binary = cv2.threshold(
        image,
        0,
        255,
        cv2.THRESH_BINARY + cv2.THRESH_OTSU,
    )

    # Light noise removal; score tables are small type so keep it gentle
    return cv2.medianBlur(binary, 3)


class TesseractOCR:
    """OCR engine using Tesseract.

    Extracts line-level text with confidence scores.
    """

    def __init__(
        self,
        language: str = "eng",
        psm: int = 6,
        oem: int = 3,
        config: Optional[str] = None,
    ):
        """Initialize Tesseract OCR.

        Args:
            language: Tesseract language code(s), e.g., 'eng', 'eng+spa'.
            psm: Page segmentation mode (6 = assume uniform block of text,
                which keeps score-table rows on one line).
            oem: OCR Engine mode (3 = default, based on what's available).
            config: Additional Tesseract config string.
        """
        self.language = language
        self.psm = psm
        self.oem = oem
        self.config = config or ""

    def _build_config(self) -> str:
        """Build Tesseract configuration string."""
        config_parts = [
            f"--psm {self.psm}",
            f"--oem {self.oem}",
        ]
        if self.config:
            config_parts.append(self.config)
        return " ".join(config_parts)

    def version(self) -> str:
        """Tesseract binary version; raises if the binary is missing."""
        return str(pytesseract.get_tesseract_version())

    def extract_lines(
        self,
        image: np.ndarray,
        page_number: int = 1,
        min_confidence: float = 0.0,
    ) -> list[OCRLine]:
        """Extract text lines from a gray image.

        Args:
            image: Grayscale page image.
            page_number: 1-indexed page the image came from.
            min_confidence: Lines averaging below this (0-1) are dropped.

        Returns:
            OCRLine records in reading order.
        """
        data = pytesseract.image_to_data(
            Image.fromarray(preprocess_for_ocr(image)),
            lang=self.language,
            config=self._build_config(),
            output_type=pytesseract.Output.DICT,
        )

        grouped: dict[tuple[int, int, int], dict] = {}
        for i in range(len(data["text"])):
            text = str(data["text"][i]).strip()
            conf = float(data["conf"][i])

            # Skip empty boxes and layout-only entries
            if not text or conf < 0:
                continue

            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            entry = grouped.setdefault(key, {"words": [], "confs": [], "top": data["top"][i]})
            entry["words"].append(text)
            entry["confs"].append(normalize_confidence(conf))
            entry["top"] = min(entry["top"], data["top"][i])

        lines = []
        for entry in sorted(grouped.values(), key=lambda e: e["top"]):
            confidence = sum(entry["confs"]) / len(entry["confs"])
            if confidence < min_confidence:
                continue
            lines.append(
                OCRLine(
                    text=" ".join(entry["words"]),
                    confidence=confidence,
                    page_number=page_number,
                    top=float(entry["top"]),
                )
            )
        return lines
