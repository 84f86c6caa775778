"""HomeKit camera streaming sessions backed by FFmpeg."""
