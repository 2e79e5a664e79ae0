"""OpenAI-compatible proxy in front of NVIDIA NIM with reasoning passthrough."""

__version__ = "1.0.0"
