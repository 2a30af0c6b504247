"""Asynchronous audio-processing job pipeline."""
