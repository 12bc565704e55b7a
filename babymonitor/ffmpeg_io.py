"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

DEFAULT_THREAD_QUEUE_SIZE = 512
DEFAULT_SAMPLE_FORMAT = "s16le"


def pcm_pipe_input_args(
    sample_rate: int,
    channels: int,
    *,
    queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
    sample_format: str = DEFAULT_SAMPLE_FORMAT,
) -> list[str]:
    """Return input arguments for piping PCM frames into ffmpeg.

    ffmpeg treats options appearing before ``-i`` as applying to that input. We
    centralise construction of the PCM pipe arguments so callers always place
    ``-thread_queue_size`` ahead of the input they target.
    """

    return [
        "-f",
        sample_format,
        "-ar",
        str(sample_rate),
        "-ac",
        str(channels),
        "-thread_queue_size",
        str(queue_size),
        "-i",
        "pipe:0",
    ]


def mp3_pipe_output_args(quality: int, bitrate: str = "128k") -> list[str]:
    """Return output arguments for a live MP3 stream on stdout.

    ``quality`` is LAME's algorithm quality (0 best, 9 fastest). The Xing
    header is disabled because a pipe cannot be rewound to patch it.
    """

    return [
        "-vn",
        "-c:a",
        "libmp3lame",
        "-b:a",
        bitrate,
        "-compression_level",
        str(quality),
        "-write_xing",
        "0",
        "-flush_packets",
        "1",
        "-f",
        "mp3",
        "pipe:1",
    ]
