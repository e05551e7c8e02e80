"""Waste image classifier: preprocessing, one forward pass, top-1 category."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from ecoscan.errors import EcoScanError, InferenceError, ModelNotReady
from ecoscan.ml.categories import Category, CategoryId, category_for_index
from ecoscan.ml.preprocessing import TensorScope, to_input_tensor

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from ecoscan.image_source import ImageHandle
    from ecoscan.ml.model_loader import ModelHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationResult:
    """Top-1 prediction for one image."""

    category: Category
    class_index: int
    confidence: float
    image_id: str

    @property
    def category_id(self) -> CategoryId:
        return self.category.id


class WasteClassifier:
    """Classifies an image into one of the waste categories."""

    def __init__(self, input_size: int = 224) -> None:
        self._input_size = input_size

    @property
    def input_size(self) -> int:
        return self._input_size

    def classify(self, model: ModelHandle, image: ImageHandle) -> ClassificationResult:
        """Run one forward pass over ``image``.

        Args:
            model: A ready model handle.
            image: The image to classify.

        Returns:
            The top-scoring category and its probability.

        Raises:
            ModelNotReady: If the model is still loading or failed to load.
            InferenceError: On any preprocessing, shape or numeric failure.
        """
        if not model.is_ready or model.session is None:
            raise ModelNotReady(f"Model is {model.status}, cannot classify")

        with TensorScope() as scope:
            try:
                tensor = to_input_tensor(image, self._input_size, scope)
                _check_input_shape(model.input_shape, tensor.shape)
                outputs = model.session.run([model.output_name], {model.input_name: tensor})
                probabilities = scope.track(np.asarray(outputs[0]))
                del outputs, tensor
                index, confidence = top_class(probabilities)
            except EcoScanError:
                raise
            except Exception as exc:
                raise InferenceError(f"Forward pass failed: {exc}") from exc

        category = category_for_index(index)
        logger.info(
            "Classified image %s as %s (class=%d, confidence=%.3f)",
            image.id,
            category.id,
            index,
            confidence,
        )
        return ClassificationResult(
            category=category,
            class_index=index,
            confidence=confidence,
            image_id=image.id,
        )


def top_class(probabilities: NDArray[np.floating]) -> tuple[int, float]:
    """Return (index, probability) of the highest score; ties go to the first index.

    Raises:
        InferenceError: If the output is not a (1, K) probability vector.
    """
    if probabilities.ndim != 2 or probabilities.shape[0] != 1 or probabilities.shape[1] < 1:
        raise InferenceError(f"Expected model output of shape (1, K), got {probabilities.shape}")

    vector = probabilities[0]
    if not np.all(np.isfinite(vector)):
        raise InferenceError("Model output contains non-finite values")
    if vector.min() < 0.0 or vector.max() > 1.0:
        raise InferenceError("Model output is not a probability vector (values outside [0, 1])")

    index = int(np.argmax(vector))
    return index, float(vector[index])


def _check_input_shape(declared: list[int | str | None] | None, actual: tuple[int, ...]) -> None:
    if declared is None:
        return
    if len(declared) != len(actual):
        raise InferenceError(f"Model expects input rank {len(declared)}, got shape {actual}")
    for expected, got in zip(declared, actual, strict=True):
        # Symbolic or unknown dims accept any size.
        if isinstance(expected, int) and expected > 0 and expected != got:
            raise InferenceError(f"Model expects input shape {declared}, got {actual}")
