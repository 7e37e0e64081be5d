from pathlib import Path
from typing import List, Sequence, Tuple

from .errors import InputPathError
from .log import get_logger

logger = get_logger("inputs")

INPUT_SUFFIX = ".bin"
MULTISENSOR = "multisensor"


def parse_inputs(data_path: Path) -> Tuple[List[str], str]:
    """Collect the sensor frames of a multi-sensor dataset folder.

    Inputs are the ``*.bin`` files under ``<data_path>/bgr``, sorted, as absolute paths.
    """
    data_path = Path(data_path)
    if not data_path.exists():
        raise InputPathError(f"File not exists: {data_path}")
    if not data_path.is_dir():
        raise InputPathError(f"Unknown data_path is specified: {data_path}, it's not a directory")

    bgr = data_path / "bgr"
    files = sorted(p for p in bgr.rglob("*") if p.is_file() and p.suffix.lower() == INPUT_SUFFIX) if bgr.is_dir() else []
    if not files:
        raise InputPathError(f"No {INPUT_SUFFIX} inputs found under {bgr}")

    inputs = [str(p.resolve()) for p in files]
    logger.info(f"Load {len(inputs)} files from folder: {data_path}, mark media type as: {MULTISENSOR}")
    return inputs, MULTISENSOR


def expand_inputs(media: Sequence[str], repeats: int, stream_num: int) -> List[str]:
    # repeat the media `repeats` times, then the whole block once per stream
    block = list(media) * max(repeats, 0)
    return block * max(stream_num, 0)
