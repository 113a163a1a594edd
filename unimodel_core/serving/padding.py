"""
Dynamic padding for variable-length batch inputs.

Numeric sequence payloads (lists, tuples, numpy arrays) are padded along
their first axis to the longest item in the batch. The original length and
container type of every item are recorded so that outputs of the same
padded length can be cut back and returned in the caller's own type.

Anything else (strings, dicts, scalars, ragged or non-numeric sequences)
passes through untouched and is never unpadded.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

_PADDABLE_KINDS = "biufc"


def _as_sequence_array(payload: Any) -> Optional[np.ndarray]:
    """Return payload as an ndarray with a first axis, or None if not paddable."""
    if not isinstance(payload, (list, tuple, np.ndarray)):
        return None
    try:
        array = np.asarray(payload)
    except (ValueError, TypeError):
        # Ragged nesting
        return None
    if array.ndim == 0 or array.dtype.kind not in _PADDABLE_KINDS:
        return None
    return array


def pad_batch(
    payloads: Sequence[Any],
    pad_value: float = 0.0,
    enabled: bool = True,
) -> Tuple[List[Any], List[Optional[int]], List[Optional[type]]]:
    """
    Pad variable-length payloads to the batch maximum.

    Returns:
        (inputs, original_lengths, original_types). For items that were not
        padded the length and type entries are None.
    """
    inputs: List[Any] = list(payloads)
    lengths: List[Optional[int]] = [None] * len(inputs)
    types: List[Optional[type]] = [None] * len(inputs)

    if not enabled or not inputs:
        return inputs, lengths, types

    arrays = {}
    for i, payload in enumerate(inputs):
        array = _as_sequence_array(payload)
        if array is not None:
            arrays[i] = array
            lengths[i] = int(array.shape[0])
            types[i] = np.ndarray if isinstance(payload, np.ndarray) else type(payload)

    if not arrays:
        return inputs, lengths, types

    target = max(lengths[i] for i in arrays)
    for i, array in arrays.items():
        missing = target - array.shape[0]
        if missing:
            widths = [(0, missing)] + [(0, 0)] * (array.ndim - 1)
            array = np.pad(array, widths, mode="constant", constant_values=pad_value)
        inputs[i] = array

    logger.debug(f"Padded {len(arrays)}/{len(inputs)} items to length {target}")
    return inputs, lengths, types


def _restore_type(value: Any, original_type: type) -> Any:
    if original_type is np.ndarray:
        return np.asarray(value)
    if isinstance(value, np.ndarray):
        value = value.tolist()
    if original_type is tuple:
        return tuple(value)
    return list(value)


def unpad(
    outputs: Sequence[Any],
    inputs: Sequence[Any],
    original_lengths: Sequence[Optional[int]],
    original_types: Sequence[Optional[type]],
) -> List[Any]:
    """
    Undo pad_batch on backend outputs.

    An output is cut back only when it still has the padded input's length
    along its first axis; outputs of any other shape are returned as-is.
    """
    restored: List[Any] = []
    for i, output in enumerate(outputs):
        length = original_lengths[i] if i < len(original_lengths) else None
        if length is None or not isinstance(output, (list, tuple, np.ndarray)):
            restored.append(output)
            continue

        padded_length = len(inputs[i])
        if len(output) != padded_length:
            restored.append(output)
            continue

        restored.append(_restore_type(output[:length], original_types[i]))
    return restored
