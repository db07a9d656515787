from typing import Protocol, runtime_checkable

__all__ = ["Notifier", "NotifierError"]


class NotifierError(RuntimeError):
    """通道暂时无法投递; 调度器按可重试失败处理"""


@runtime_checkable
class Notifier(Protocol):
    async def send(self, destination: str, text: str) -> None:
        """投递失败时抛出异常"""
        ...
