"""Transcription and analysis clients."""
