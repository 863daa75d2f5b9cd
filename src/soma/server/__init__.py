"""HTTP surface of the memory core."""

from .app import create_app, decode_image, resolve_session_id

__all__ = ["create_app", "decode_image", "resolve_session_id"]
