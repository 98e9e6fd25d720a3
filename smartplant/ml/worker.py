"""
Classifier worker process.

Reads one JSON request per line on stdin and writes one JSON response per
line on stdout:

    {"image": "/abs/path.jpg", "topk": 5}
    {"species_name": "...", "confidence": 0.87, "topk": [{"name": "...", "confidence": 0.87}]}

A request that cannot be answered (unreadable image, bad JSON) gets an
error response on the same line instead of killing the process:

    {"error": "...", "species_name": null, "confidence": 0, "topk": []}

Logging goes to stderr, which the supervisor relays to the server log.

Usage:
    python -m smartplant.ml.worker
"""

import json
import logging
import sys
from typing import Any, TextIO

from smartplant.core.config import get_settings
from smartplant.ml.species_classifier import SpeciesClassifier

logger = logging.getLogger("smartplant.worker")


def error_response(message: str) -> dict[str, Any]:
    return {"error": message, "species_name": None, "confidence": 0, "topk": []}


def handle_line(classifier: SpeciesClassifier, line: str, default_top_k: int) -> dict[str, Any]:
    """Answer one request line."""
    try:
        request = json.loads(line)
    except json.JSONDecodeError as e:
        return error_response(f"invalid request: {e}")
    if not isinstance(request, dict):
        return error_response("request must be a JSON object")

    image = request.get("image")
    if not image:
        return error_response("missing image path")

    top_k = request.get("topk", default_top_k)
    if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 1:
        top_k = default_top_k

    try:
        return classifier.predict(str(image), top_k)
    except Exception as e:
        logger.warning(f"Failed to classify {image}: {e}")
        return error_response(str(e))


def serve(classifier: SpeciesClassifier, stdin: TextIO, stdout: TextIO, default_top_k: int) -> None:
    """Answer requests until stdin closes."""
    for line in stdin:
        if not line.strip():
            continue
        response = handle_line(classifier, line, default_top_k)
        stdout.write(json.dumps(response) + "\n")
        stdout.flush()


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    classifier = SpeciesClassifier(settings.classifier_model_id)
    classifier.ensure_loaded()
    logger.info("Worker ready")

    serve(classifier, sys.stdin, sys.stdout, settings.default_top_k)
    logger.info("stdin closed, worker exiting")


if __name__ == "__main__":
    main()
