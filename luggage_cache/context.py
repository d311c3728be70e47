import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

from omegaconf import DictConfig

from luggage_cache.assistant import LuggageAssistant
from luggage_cache.cache.persistence import CachePersistence
from luggage_cache.cache.store import CacheStore
from luggage_cache.config import CacheConfig, CoordinatorConfig, ModelConfig, MonitorConfig
from luggage_cache.coordinator import RequestCoordinator
from luggage_cache.llm_utils import LLMClient
from luggage_cache.monitor import PerformanceMonitor

logger = logging.getLogger(__name__)


def _section(cfg: Union[DictConfig, Mapping[str, Any], None], name: str) -> Any:
    if cfg is None:
        return None
    return cfg.get(name)


@dataclass
class AppContext:
    """Explicitly wired cache, monitor, coordinator and assistant for one process."""

    store: CacheStore
    monitor: PerformanceMonitor
    coordinator: RequestCoordinator
    assistant: LuggageAssistant
    monitor_state_file: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        cfg: Union[DictConfig, Mapping[str, Any], None] = None,
        llm: Optional[LLMClient] = None,
        persistence: Optional[CachePersistence] = None,
        clock: Callable[[], float] = time.time,
        start_cleanup: bool = True,
    ) -> "AppContext":
        cache_config = CacheConfig.from_omegaconf(_section(cfg, "cache"))
        coordinator_config = CoordinatorConfig.from_omegaconf(_section(cfg, "coordinator"))
        monitor_config = MonitorConfig.from_omegaconf(_section(cfg, "monitor"))

        if llm is None:
            model_config = ModelConfig()
            model_config.update_from_config(_section(cfg, "model"))
            llm = LLMClient(model_config)

        store = CacheStore.from_config(cache_config, persistence=persistence, clock=clock)
        monitor = PerformanceMonitor.from_config(monitor_config, clock=clock)
        if monitor_config.state_file:
            monitor.load_state(monitor_config.state_file)
        coordinator = RequestCoordinator.from_config(store, monitor, coordinator_config)
        if start_cleanup:
            store.start_periodic_cleanup(cache_config.cleanup_interval_seconds)

        logger.info(
            "Cache ready: backend=%s, budget=%d bytes, %d entries loaded.",
            cache_config.backend,
            cache_config.max_size_bytes,
            len(store),
        )
        return cls(
            store=store,
            monitor=monitor,
            coordinator=coordinator,
            assistant=LuggageAssistant(coordinator, llm),
            monitor_state_file=monitor_config.state_file,
        )

    def close(self) -> None:
        self.coordinator.shutdown()
        if self.monitor_state_file:
            self.monitor.save_state(self.monitor_state_file)
        self.store.close()

    def __enter__(self) -> "AppContext":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
