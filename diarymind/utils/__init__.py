from diarymind.utils.helpers import atomic_append_text, atomic_write_text, ensure_dir, safe_filename, user_filename

__all__ = ["atomic_append_text", "atomic_write_text", "ensure_dir", "safe_filename", "user_filename"]
