"""Model subpackage: decoder-only architectures, KV cache, and LoRA/X-LoRA wrappers."""
