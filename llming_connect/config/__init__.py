from .connect_config import ConnectSettings

__all__ = ["ConnectSettings"]
