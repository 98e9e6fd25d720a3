"""
Species Classifier

Image classification with a HuggingFace ``image-classification`` pipeline.
The model id comes from settings (``SMARTPLANT_CLASSIFIER_MODEL_ID``), so any
hub checkpoint with an image-classification head can be swapped in, e.g. a
PlantNet or iNaturalist fine-tune in place of the default ViT.

The pipeline is loaded lazily on first use and kept for the life of the
process; the worker calls ensure_loaded() at startup so the first request
does not pay for the download.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

from PIL import Image
from transformers import pipeline as hf_pipeline

logger = logging.getLogger(__name__)


@dataclass
class LabelScore:
    """One classifier label with its probability."""
    name: str
    confidence: float


def clean_label(raw_label: str) -> str:
    """
    Turn a model label into a display name.

    Hub labels come in several shapes: ``"Tomato___healthy"``,
    ``"daisy, Bellis perennis"`` or ``"rafflesia_arnoldii"``.
    """
    label = raw_label.split(",")[0]
    label = re.sub(r"_+", " ", label)
    return " ".join(label.split())


class SpeciesClassifier:
    """
    Wrapper around a HuggingFace image classification pipeline.

    Usage:
        classifier = SpeciesClassifier("google/vit-base-patch16-224")
        classifier.ensure_loaded()
        scores = classifier.classify("/srv/uploads/leaf.jpg", top_k=5)
    """

    def __init__(self, model_id: str, device: int = -1):
        """
        Args:
            model_id: HuggingFace hub id or local path of the checkpoint
            device: pipeline device index, -1 for CPU
        """
        self.model_id = model_id
        self.device = device
        self._pipeline = None

    @property
    def is_loaded(self) -> bool:
        return self._pipeline is not None

    def ensure_loaded(self) -> None:
        """Load the pipeline if it has not been loaded yet."""
        if self._pipeline is None:
            logger.info(f"Loading HuggingFace model: {self.model_id}")
            start = time.perf_counter()
            self._pipeline = hf_pipeline(
                "image-classification",
                model=self.model_id,
                device=self.device,
            )
            logger.info(f"Model loaded in {time.perf_counter() - start:.1f}s")

    def classify(self, image_path: str, top_k: int = 5) -> list[LabelScore]:
        """
        Classify one image file.

        Returns:
            Labels ordered by descending confidence, at most top_k entries
        """
        self.ensure_loaded()

        with Image.open(image_path) as image:
            rgb = image.convert("RGB")

        results = self._pipeline(rgb, top_k=top_k)
        return [
            LabelScore(name=clean_label(item["label"]), confidence=float(item["score"]))
            for item in results
        ]

    def predict(self, image_path: str, top_k: int = 5) -> dict:
        """
        Classify one image and shape the answer for the worker protocol.

        Returns:
            {"species_name", "confidence", "topk": [{"name", "confidence"}, ...]}
        """
        scores = self.classify(image_path, top_k)
        best: Optional[LabelScore] = scores[0] if scores else None
        return {
            "species_name": best.name if best else None,
            "confidence": best.confidence if best else 0.0,
            "topk": [{"name": s.name, "confidence": s.confidence} for s in scores],
        }
