# mediarelay

Building blocks for a server that relays live video streams. Everything here is a
library; there is no command to run.

## What is inside

- `mediarelay.logger` — a leveled logger. `Logger(level, destinations, file_path)`
  writes entries whose `Level` (`DEBUG`, `INFO`, `WARN`, `ERROR`) is at or above
  its minimum to each `Destination`: `STDOUT` (coloured when standard output is a
  terminal), `FILE` (appended to `file_path`) or `SYSLOG` (the system log, where
  the platform has one). `Logger.log(level, format, *args)` takes printf-style
  arguments; the logger is a context manager that closes its destinations.
  `format_entry(t, level, message, use_color)` renders one line such as
  `2009/11/10 23:00:00 INF message`.
- `mediarelay.rlimit` — `raise_limit()` raises the soft limit on open file
  descriptors and returns the resulting `(soft, hard)` pair, or `None` on
  platforms without resource limits.
- `mediarelay.externalcmd` — `Cmd(pool, cmdstr, restart, env, on_exit)` runs a
  command in the background with the variables of `env` added to its environment.
  `expand_variables` replaces `$NAME` placeholders in the command line. When the
  command exits on its own, `on_exit` receives an exception; with `restart` the
  command is started again after five seconds. `Cmd.close()` stops it (SIGINT,
  or kill on Windows) without waiting; `Pool.close()` waits for every command of
  the pool to finish.
- `mediarelay.units` — RTP packets (`RTPHeader`, `RTPPacket`, with
  `marshal()` and `marshal_size()`) and the data units routed through the server
  (`UnitGeneric`, `UnitH264`, `UnitH265`).
- `mediarelay.formats` — stream formats (`GenericFormat`, `H264Format`,
  `H265Format`) whose parameter sets can be read and replaced under a lock with
  `safe_params()` and `safe_set_params()`.
- `mediarelay.h264`, `mediarelay.h265` — RTP packetisers (`H264Encoder`,
  `H265Encoder`), depacketisers (`H264Decoder`, `H265Decoder`) and processors
  (`H264Processor`, `H265Processor`). The processors strip padding, follow
  SPS/PPS/VPS changes into the format, drop parameter sets and access unit
  delimiters from access units and put the current parameter sets in front of key
  frames, re-packetise a stream once a packet exceeds the maximum size, and log a
  warning when no key frame has arrived for ten seconds.
- `mediarelay.processor` — `new_processor(udp_max_payload_size, format,
  generate_rtp_packets, log)` picks the processor for a format. Formats other than
  H264 and H265 get a `GenericProcessor`, which strips padding and raises
  `ProcessingError` for oversized packets.
- `mediarelay.httpserv` — `WrappedServer(address, read_timeout, server_cert,
  server_key, app)` serves a WSGI application from a background thread on a
  `host:port` address, over HTTPS when a certificate is given; an exception in the
  application terminates the process. `server_header_middleware` sets the
  `Server` header and `logger_middleware` logs each request and response at debug
  level.
- `mediarelay.rpicamera` — camera parameters (`Params`, with `serialize()`) and
  `Pipe`, an OS pipe carrying messages with a 4-byte little-endian length prefix.

## Example

```python
from mediarelay.formats import H264Format
from mediarelay.processor import new_processor
from mediarelay.units import UnitH264

fmt = H264Format(payload_type=96, packetization_mode=1)
proc = new_processor(1472, fmt, True, None)

unit = UnitH264(au=[b"\x05\x01\x02"])
proc.process(unit, False)
for pkt in unit.rtp_packets:
    print(pkt.header.sequence_number, len(pkt.marshal()))
```

## What it does not do

- It is not a complete server: there is no RTSP, RTMP, HLS or WebRTC protocol
  handling, no path management, no configuration file and no command to start.
- Only H264 and H265 are decoded and re-packetised; every other format, audio
  included, is passed through by `GenericProcessor` after its size is checked.
- `RPICamera` does not drive a camera: creating one raises `RuntimeError`,
  because camera support is not available in this build.

## Running the tests

```
pip install -e .[test]
pytest
```