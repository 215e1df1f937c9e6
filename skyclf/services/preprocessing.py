"""
Image preprocessing for the sky state classifier.

Tensor contract: float32, NCHW, shape (1, 3, 224, 224), RGB scaled to
[0, 1] and normalised with the ImageNet channel mean/std the trainer uses.
"""

from pathlib import Path
from typing import Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from skyclf.exceptions import ImagePreprocessError

INPUT_SIZE: Tuple[int, int] = (224, 224)
INPUT_SHAPE: Tuple[int, int, int, int] = (1, 3, INPUT_SIZE[1], INPUT_SIZE[0])

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


def preprocess_image(image_path: Union[str, Path]) -> np.ndarray:
    """Read an image file and return a (1, 3, 224, 224) float32 array.

    Args:
        image_path: Path to the image on disk.

    Returns:
        Batch-ready, normalised NCHW array.

    Raises:
        ImagePreprocessError: The file is missing or is not a decodable image.
    """
    try:
        with Image.open(image_path) as img:
            img = img.convert("RGB").resize(INPUT_SIZE, Image.Resampling.BILINEAR)
            arr = np.asarray(img, dtype=np.float32) / 255.0
    except FileNotFoundError:
        raise ImagePreprocessError(f"image not found: {image_path}")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImagePreprocessError(f"decode {image_path}: {e}")

    arr = (arr - IMAGENET_MEAN) / IMAGENET_STD
    chw = np.transpose(arr, (2, 0, 1))
    return np.ascontiguousarray(chw[np.newaxis, ...], dtype=np.float32)
