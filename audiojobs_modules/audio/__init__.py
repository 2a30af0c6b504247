"""ffprobe/ffmpeg helpers."""
