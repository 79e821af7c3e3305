"""
WorkerRegistry：进程内 session 表（session_id → WorkerSession）。

约束：
- 所有读写都在锁内完成（即使宿主使用 OS 线程也不会破坏映射）；
- 回调（消息投递）在锁外执行，避免监听器重入 registry 时死锁；
- 同一 session_id 在存活期间不可重复注册；移除是幂等的（第二次 unregister 为 no-op）。
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Dict, List, Optional

from worker_offload.core.contracts import ChannelMessage

if TYPE_CHECKING:
    from worker_offload.core.session import WorkerSession

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """活跃 session 的关联表（线程安全）。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, "WorkerSession"] = {}

    def register(self, session: "WorkerSession") -> None:
        """
        注册一个 session。

        异常：
        - ValueError：同一 session_id 仍处于存活状态
        """

        sid = str(session.session_id)
        with self._lock:
            if sid in self._sessions:
                raise ValueError(f"session id already registered: {sid}")
            self._sessions[sid] = session

    def unregister(self, session_id: str) -> Optional["WorkerSession"]:
        """移除 session；返回被移除的对象（不存在时返回 None）。"""

        with self._lock:
            return self._sessions.pop(str(session_id), None)

    def lookup(self, session_id: str) -> Optional["WorkerSession"]:
        """按 id 查找 session（不存在返回 None）。"""

        with self._lock:
            return self._sessions.get(str(session_id))

    def route(self, session_id: str, message: ChannelMessage) -> bool:
        """
        把入站消息投递给对应 session。

        返回：
        - True：已投递
        - False：没有存活条目（陈旧/孤儿子进程的消息），记录日志后丢弃
        """

        session = self.lookup(session_id)
        if session is None:
            logger.warning("Dropping %r message for session %s without a live registry entry", message.type, session_id)
            return False
        session.deliver(message)
        return True

    def sessions(self) -> List["WorkerSession"]:
        """当前所有 session 的快照。"""

        with self._lock:
            return list(self._sessions.values())

    def attached(self) -> List["WorkerSession"]:
        """仍计入 join 屏障的 session（handle 未 detach）。"""

        return [s for s in self.sessions() if not s.handle.is_detached]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return str(session_id) in self._sessions
