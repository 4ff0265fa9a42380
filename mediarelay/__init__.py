"""Building blocks for a live video relay server: H264/H265 RTP processing, logging, external commands and HTTP helpers."""

__version__ = "0.1.0"