"""xinfer: the decode core of a LoRA/X-LoRA capable LLM inference engine."""

__version__ = "0.1.0"
