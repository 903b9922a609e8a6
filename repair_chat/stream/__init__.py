from .normalizer import normalize_messages
from .postprocess import FALLBACK_TEXT, extract_hidden_data, process_stream
from .wire import decode_lines, encode_response

__all__ = [
    "FALLBACK_TEXT",
    "decode_lines",
    "encode_response",
    "extract_hidden_data",
    "normalize_messages",
    "process_stream",
]
