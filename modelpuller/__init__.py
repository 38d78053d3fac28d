"""Pull model files into a local directory and front a model runtime with per-model request ordering."""

__version__ = "0.1.0"

__all__ = ["config", "dotpath", "messages", "puller", "modelstate", "server"]