"""Choosing the processor that cleans and normalizes a stream of a format."""

from __future__ import annotations

from datetime import datetime

from .formats import Format, H264Format, H265Format
from .h264 import H264Processor
from .h265 import H265Processor
from .units import RTPPacket, Unit, UnitGeneric


class ProcessingError(Exception):
    """A data unit cannot be processed."""


class GenericProcessor:
    """Checks and cleans packets of a format that is not decoded."""

    def __init__(
        self,
        udp_max_payload_size: int,
        format: Format,
        generate_rtp_packets: bool,
        log=None,
    ) -> None:
        if generate_rtp_packets:
            raise ProcessingError(
                f"we don't know how to generate RTP packets of format {format!r}"
            )
        self.udp_max_payload_size = udp_max_payload_size
        self.format = format

    def process(self, unit: UnitGeneric, has_non_rtsp_readers: bool) -> None:
        """Remove padding and check the packet size."""
        pkt = unit.rtp_packets[0]
        pkt.header.padding = False
        pkt.padding_size = 0

        size = pkt.marshal_size()
        if size > self.udp_max_payload_size:
            raise ProcessingError(
                f"payload size ({size}) is greater than maximum allowed "
                f"({self.udp_max_payload_size})"
            )

    def unit_for_rtp_packet(self, pkt: RTPPacket, ntp: datetime) -> Unit:
        """Wrap an RTP packet into a unit."""
        return UnitGeneric(rtp_packets=[pkt], ntp=ntp)


def new_processor(
    udp_max_payload_size: int,
    format: Format,
    generate_rtp_packets: bool,
    log=None,
):
    """Return the processor suited to the format."""
    if isinstance(format, H264Format):
        return H264Processor(udp_max_payload_size, format, generate_rtp_packets, log)
    if isinstance(format, H265Format):
        return H265Processor(udp_max_payload_size, format, generate_rtp_packets, log)
    return GenericProcessor(udp_max_payload_size, format, generate_rtp_packets, log)