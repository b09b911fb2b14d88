from channels.base import BotWorker, ChannelError

__all__ = ["BotWorker", "ChannelError"]
