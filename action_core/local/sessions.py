"""本地会话注册表。

会话是指向当前已加载执行上下文的句柄：
- 只在模型 Loaded 时可以创建，并记录创建时的 generation。
- 多个会话共享同一个上下文，切换时把前一个会话的 KV 状态保存下来，再恢复目标会话的状态。
- 模型卸载时注册表会释放并清空所有会话；之后用旧 id 查询得到 None，
  用旧 id 生成会显式抛出 SessionInvalid。

所有操作都走 LocalModelManager.lock 这一条互斥路径。
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import uuid4

from action_core.domain.exceptions import SessionInvalid
from action_core.infrastructure.logging.logger import log_event
from action_core.local.model_manager import LocalModelManager


@dataclass
class LocalSession:
    """会话句柄。

    - generation: 创建时模型的 generation，与当前值不一致即失效。
    - n_past: 已经喂进上下文的 token 数，0 表示还没进行过第一轮。
    - state: 切换到其他会话时保存的上下文快照。
    """

    id: str
    generation: int
    n_past: int = 0
    state: Any = None
    disposed: bool = False

    @property
    def is_first_turn(self) -> bool:
        return self.n_past == 0

    def dispose(self) -> None:
        self.state = None
        self.disposed = True


class LocalSessionRegistry:
    def __init__(self, manager: LocalModelManager):
        self._manager = manager
        self._sessions: Dict[str, LocalSession] = {}
        self._active_id: Optional[str] = None
        manager.add_unload_hook(self._invalidate_all)
        manager.set_idle_guard(lambda: not self._sessions)

    @property
    def lock(self):
        return self._manager.lock

    def start_session(self) -> str:
        with self.lock:
            if not self._manager.is_loaded:
                raise SessionInvalid(message="Cannot start a session: the local model is not loaded.")
            session = LocalSession(id=f"s-{uuid4().hex}", generation=self._manager.generation)
            self._sessions[session.id] = session
            log_event(logging.INFO, "Started local session", {"session_id": session.id})
            return session.id

    def end_session(self, session_id: str) -> None:
        with self.lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return
            session.dispose()
            if self._active_id == session_id:
                self._active_id = None
            log_event(logging.INFO, "Ended local session", {"session_id": session_id})

    def get_session(self, session_id: str) -> Optional[LocalSession]:
        with self.lock:
            session = self._sessions.get(session_id)
            if session is None or session.disposed or session.generation != self._manager.generation:
                return None
            return session

    def require_session(self, session_id: str) -> LocalSession:
        session = self.get_session(session_id)
        if session is None:
            raise SessionInvalid(
                message="The conversation session is no longer valid. Please run the action again.",
                session_id=session_id,
            )
        return session

    def activate(self, session: LocalSession) -> Any:
        """让上下文切换到该会话的状态，返回可直接使用的模型。

        调用方必须已经持有 lock。
        """

        model = self._manager.model
        if self._active_id == session.id:
            return model
        previous = self._sessions.get(self._active_id) if self._active_id else None
        if previous is not None and not previous.disposed:
            previous.state = model.save_state()
        if session.state is None:
            model.reset()
        else:
            model.load_state(session.state)
        self._active_id = session.id
        return model

    def __len__(self) -> int:
        return len(self._sessions)

    def _invalidate_all(self) -> None:
        # 卸载时在锁内调用
        count = len(self._sessions)
        for session in self._sessions.values():
            session.dispose()
        self._sessions.clear()
        self._active_id = None
        if count:
            log_event(logging.INFO, "Invalidated local sessions on unload", {}, count=count)
