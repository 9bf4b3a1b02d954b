"""CLI module for diarymind."""
