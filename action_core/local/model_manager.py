"""本地模型生命周期管理。

LocalModelManager 是权重与执行上下文的唯一所有者（单例），负责：

- 状态机 NotLoaded -> Loading -> {Loaded | Error}，Loaded -> NotLoaded（卸载），
  Error -> Loading（重试）；每次状态变化都会通知订阅者。
- 同一时间最多一个加载；加载中再次请求加载会被直接丢弃，而不是排队。
- 卸载时先让会话注册表清空所有会话，再释放上下文与权重。

`lock` 是与 LocalSessionRegistry、LocalInferenceEngine 共用的互斥路径：
生成循环整个过程都持有它，因此已经拿到的会话不会在生成中途被释放。
权重构建本身在锁外进行；卸载会等待进行中的加载结束，两者严格串行。
"""

import gc
import logging
import threading
import time
from pathlib import Path
from threading import Event
from typing import Any, Callable, Dict, List, Optional

from action_core.domain.exceptions import ModelFileNotFound, ModelLoadFailed, ModelUnavailable
from action_core.domain.models import ModelStatus, ProviderSettings
from action_core.infrastructure.logging.logger import log_event


StateListener = Callable[[ModelStatus], None]
ModelFactory = Callable[..., Any]

# prefer_gpu 时把全部层放到 GPU
ALL_GPU_LAYERS = -1
DEFAULT_CONTEXT_SIZE = 4096
IDLE_CHECK_INTERVAL_SECONDS = 60.0


def llama_factory(**params: Any) -> Any:
    """默认的模型工厂：llama-cpp-python 一次性构建权重与上下文。"""

    from llama_cpp import Llama

    return Llama(**params)


def build_model_params(settings: ProviderSettings) -> Dict[str, Any]:
    """把 ProviderSettings 映射为 llama_cpp.Llama 的构造参数。"""

    return {
        "model_path": settings.local_model_path,
        "n_ctx": settings.context_size if settings.context_size > 0 else DEFAULT_CONTEXT_SIZE,
        "n_threads": settings.cpu_cores if settings.cpu_cores > 0 else None,
        "n_gpu_layers": ALL_GPU_LAYERS if settings.prefer_gpu else 0,
        "use_mmap": settings.memory_map,
        "use_mlock": settings.memory_lock,
        "verbose": False,
    }


def _release(model: Any) -> None:
    # Llama.close() 先释放上下文，再释放权重
    close = getattr(model, "close", None)
    if callable(close):
        close()


class LocalModelManager:
    def __init__(
        self,
        model_factory: Optional[ModelFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._factory = model_factory or llama_factory
        self._clock = clock
        self.lock = threading.RLock()
        self._settled = threading.Condition(self.lock)

        self._status = ModelStatus.NOT_LOADED
        self._error_message: Optional[str] = None
        self._model: Any = None
        self._model_path: Optional[str] = None
        self._settings: Optional[ProviderSettings] = None
        self._generation = 0

        self._listeners: List[StateListener] = []
        self._unload_hooks: List[Callable[[], None]] = []
        self._idle_guard: Callable[[], bool] = lambda: True
        self._last_used = clock()
        self._idle_timer: Optional[threading.Timer] = None

    # ---- 状态查询 ----

    @property
    def status(self) -> ModelStatus:
        return self._status

    @property
    def error_message(self) -> Optional[str]:
        return self._error_message

    @property
    def is_loaded(self) -> bool:
        return self._status == ModelStatus.LOADED

    @property
    def generation(self) -> int:
        """每次卸载加一，会话据此判断自己是否属于当前上下文。"""
        return self._generation

    @property
    def model(self) -> Any:
        if self._model is None or not self.is_loaded:
            raise ModelUnavailable(message="The local model is not loaded.")
        return self._model

    @property
    def model_label(self) -> str:
        return Path(self._model_path).stem if self._model_path else ""

    # ---- 订阅 ----

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_unload_hook(self, hook: Callable[[], None]) -> None:
        """卸载前在锁内调用，用于让会话注册表清空所有会话。"""
        self._unload_hooks.append(hook)

    def set_idle_guard(self, guard: Callable[[], bool]) -> None:
        """guard 返回 False 时空闲卸载会跳过（例如还有未结束的会话）。"""
        self._idle_guard = guard

    # ---- 加载 / 卸载 ----

    def load_model(self, settings: ProviderSettings, cancel_event: Optional[Event] = None) -> ModelStatus:
        """根据配置加载模型。

        已经在 Loading / Loaded 时直接返回当前状态。
        路径缺失抛出 ModelFileNotFound，构建失败抛出 ModelLoadFailed，两者都会进入 Error 状态。
        """

        path = settings.local_model_path
        log_ctx = {"model_path": path}
        with self.lock:
            if self._status in (ModelStatus.LOADING, ModelStatus.LOADED):
                log_event(logging.INFO, "Model load requested, but it's already loading or loaded.", log_ctx)
                return self._status
            if not path or not path.strip() or not Path(path).is_file():
                message = "Model path is not set or the file does not exist."
                self._set_state(ModelStatus.ERROR, message)
                log_event(logging.ERROR, message, log_ctx)
                raise ModelFileNotFound(message=message, model_path=path)
            self._set_state(ModelStatus.LOADING)

        model = None
        started = self._clock()
        try:
            model = self._factory(**build_model_params(settings))
        except Exception as exc:
            message = f"Failed to load model: {exc}"
            log_event(logging.ERROR, "Failed to load local model.", log_ctx, exc_info=exc)
            with self.lock:
                self._set_state(ModelStatus.ERROR, message)
            raise ModelLoadFailed(message=message, model_path=path)

        with self.lock:
            if cancel_event is not None and cancel_event.is_set():
                # 加载期间被取消：丢弃这份新模型
                _release(model)
                self._set_state(ModelStatus.NOT_LOADED)
                log_event(logging.INFO, "Discarded model after cancelled load", log_ctx)
                return self._status
            self._model = model
            self._model_path = path
            self._settings = settings
            self._last_used = self._clock()
            self._set_state(ModelStatus.LOADED)
            self._schedule_idle_check()

        log_event(
            logging.INFO,
            "Successfully loaded local model",
            log_ctx,
            elapsed_seconds=round(self._clock() - started, 2),
        )
        return ModelStatus.LOADED

    def unload_model(self) -> None:
        """卸载模型并释放资源，幂等。"""

        with self.lock:
            # 与加载串行：等正在构建的权重提交或失败后再卸载，内存里不会同时存在两份模型
            self._settled.wait_for(lambda: self._status != ModelStatus.LOADING)
            log_event(logging.INFO, "Unloading local model.", {"model_path": self._model_path})
            self._cancel_idle_timer()
            for hook in list(self._unload_hooks):
                hook()
            model, self._model = self._model, None
            self._model_path = None
            self._generation += 1
            if model is not None:
                _release(model)
            self._set_state(ModelStatus.NOT_LOADED)
        del model
        gc.collect()

    def wait_until_settled(self, timeout: Optional[float] = None) -> ModelStatus:
        """等待正在进行的加载结束，返回最终状态。"""

        with self._settled:
            self._settled.wait_for(lambda: self._status != ModelStatus.LOADING, timeout)
            return self._status

    # ---- 空闲自动卸载 ----

    def touch(self) -> None:
        """记录一次推理活动。"""
        self._last_used = self._clock()

    def check_idle(self) -> bool:
        """空闲超时且无未结束会话时卸载模型，返回是否卸载。"""

        with self.lock:
            settings = self._settings
            if not self.is_loaded or settings is None or not settings.auto_unload:
                return False
            idle_seconds = self._clock() - self._last_used
            if idle_seconds < settings.idle_timeout_minutes * 60:
                return False
            if not self._idle_guard():
                return False
            log_event(logging.INFO, "Auto-unloading idle model", {}, idle_seconds=round(idle_seconds))
            self.unload_model()
            return True

    def _schedule_idle_check(self) -> None:
        if self._settings is None or not self._settings.auto_unload:
            return
        self._cancel_idle_timer()
        interval = min(IDLE_CHECK_INTERVAL_SECONDS, self._settings.idle_timeout_minutes * 60)
        timer = threading.Timer(interval, self._on_idle_timer)
        timer.daemon = True
        self._idle_timer = timer
        timer.start()

    def _on_idle_timer(self) -> None:
        try:
            unloaded = self.check_idle()
        except Exception as exc:
            log_event(logging.ERROR, "Idle check failed", {}, exc_info=exc)
            unloaded = False
        if not unloaded:
            with self.lock:
                if self.is_loaded:
                    self._schedule_idle_check()

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    # ---- 内部 ----

    def _set_state(self, status: ModelStatus, error_message: Optional[str] = None) -> None:
        self._status = status
        self._error_message = error_message
        self._settled.notify_all()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as exc:
                log_event(logging.ERROR, "Model state listener failed", {}, exc_info=exc)
