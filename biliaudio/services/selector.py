"""Audio representation selection for DASH manifests."""

from typing import Sequence

from biliaudio.models.media import AudioRepresentation
from biliaudio.utils.exceptions import NoStreamError


def select_best_audio(representations: Sequence[AudioRepresentation]) -> AudioRepresentation:
    """
    Pick the representation with the highest bandwidth.

    The scan is left to right and only a strictly greater bandwidth replaces
    the current choice, so the first of several equal maxima wins.

    Raises:
        NoStreamError: If ``representations`` is empty
    """
    best = None
    for representation in representations:
        if best is None or representation.bandwidth_bps > best.bandwidth_bps:
            best = representation

    if best is None:
        raise NoStreamError()
    return best
