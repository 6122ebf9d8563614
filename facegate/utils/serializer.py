import json
import time

from pathlib import Path
from typing import Dict, Optional

import numpy as np


def _format_ts(epoch: Optional[float]) -> Optional[str]:
    if epoch is None:
        return None
    ms = int((epoch - int(epoch)) * 1000)
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(epoch)) + f".{ms:03d}"


def serialize_outcome(outcome) -> Dict:
    """Serialize a RecognitionOutcome into JSON-safe form.

    The descriptor itself is dropped; only its norm is kept for debugging.
    """
    out: Dict = {
        "status": getattr(outcome.status, "value", str(outcome.status)),
        "started_at": float(outcome.started_at),
        "finished_at": float(outcome.finished_at),
        "captured_at": float(outcome.captured_at) if outcome.captured_at is not None else None,
        "ts_str": _format_ts(outcome.captured_at or outcome.started_at),
        "identity": None,
        "distance": None,
        "threshold": None,
        "bbox": None,
        "det_score": None,
        "location": list(outcome.location) if outcome.location is not None else None,
        "upload": None,
        "error": outcome.error,
        "notices": list(outcome.notices),
    }

    if outcome.match is not None:
        out["identity"] = str(outcome.match.identity_id)
        out["distance"] = round(float(outcome.match.distance), 6)
        out["threshold"] = float(outcome.match.threshold)

    face = outcome.face
    if face is not None:
        try:
            out["bbox"] = [int(x) for x in face.bbox]
        except Exception:
            out["bbox"] = None
        out["det_score"] = float(face.det_score)
        try:
            out["descriptor_norm"] = float(np.linalg.norm(face.descriptor))
        except Exception:
            out["descriptor_norm"] = None

    if outcome.upload is not None:
        out["upload"] = {
            "ok": bool(outcome.upload.ok),
            "status_code": outcome.upload.status_code,
            "error": outcome.upload.error,
            "record": outcome.upload.record,
        }

    return out


class JsonLinesReporter:
    """Appends one JSON object per recognition outcome to a file."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def __call__(self, outcome) -> None:
        record = serialize_outcome(outcome)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")
