"""Face capture gating: periodic live-feed sampling with reference-face recognition.

The package is split into small building blocks (extractor/reference index/matcher,
capture scheduler, recognition pipeline) so the CLI entry in `capture_recognizer.py`
stays a thin wiring layer.
"""

__version__ = "0.1.0"
