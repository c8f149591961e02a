"""Serialization utilities for the out-of-process channel.

Messages travel as JSON. Bitmaps are sent as raw pixel bytes (base64) with
their shape and dtype, so the worker can rebuild the exact array without a
lossy codec.
"""

import base64
import json
from typing import Any, Dict

import numpy as np

from markerpath.core.bitmap import Bitmap
from markerpath.core.errors import TransferError

BITMAP_ENCODING = "raw"


def serialize_value(value: Any) -> Any:
    """Recursively convert a value into something ``json.dumps`` accepts.

    Handles numpy arrays and scalars, dataclasses, lists, tuples and dicts.
    Falls back to repr() or str() for anything else.
    """
    if value is None:
        return None

    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()

    if isinstance(value, (str, int, float, bool)):
        return value

    if hasattr(value, "__dataclass_fields__"):
        return {
            k: serialize_value(getattr(value, k))
            for k in value.__dataclass_fields__
        }

    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]

    if isinstance(value, dict):
        return {str(k): serialize_value(v) for k, v in value.items()}

    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        pass

    if hasattr(value, "__dict__"):
        return repr(value)

    return str(value)


def encode_bitmap(bitmap: Bitmap) -> Dict[str, Any]:
    """Encode a bitmap for transmission and release the sender's copy.

    Raises:
        TransferError: If the bitmap was already transferred or closed.
    """
    if bitmap.detached or bitmap.closed:
        raise TransferError("Cannot encode a transferred or closed bitmap")

    data = np.ascontiguousarray(bitmap.data)
    encoded = {
        "encoding": BITMAP_ENCODING,
        "shape": list(data.shape),
        "dtype": str(data.dtype),
        "data_b64": base64.b64encode(data.tobytes()).decode("ascii"),
    }
    bitmap.close()
    return encoded


def decode_bitmap(data: Dict[str, Any]) -> Bitmap:
    """Rebuild a Bitmap from its encoded form.

    Raises:
        TransferError: If the payload is malformed.
    """
    try:
        if data.get("encoding", BITMAP_ENCODING) != BITMAP_ENCODING:
            raise ValueError(f"unsupported encoding {data.get('encoding')!r}")
        raw = base64.b64decode(data["data_b64"])
        array = np.frombuffer(raw, dtype=np.dtype(data["dtype"]))
        array = array.reshape(tuple(data["shape"])).copy()
    except (KeyError, TypeError, ValueError) as e:
        raise TransferError(f"Failed to decode bitmap: {e}") from e
    return Bitmap(array)


__all__ = [
    "serialize_value",
    "encode_bitmap",
    "decode_bitmap",
]
