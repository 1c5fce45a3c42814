"""streamchat: streamed chat completions with coalescing, retry and resumption."""

__version__ = "0.1.0"
