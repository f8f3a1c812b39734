"""
Roundtable - Multi-Agent Conversation Orchestrator
Entry point and wiring.

Startup sequence:
  1. Load config.yaml
  2. Configure logging
  3. Initialise the SQLite store
  4. Seed built-in capabilities
  5. Build completion backends (main, routing, summarization)
  6. Build the event bus, approval broker, tool executor and engine registry
  7. Start the web interface
  8. Await shutdown signals
"""

import asyncio
import logging
import logging.handlers
import os
import re
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import yaml

from roundtable import tools as tool_module
from roundtable.backends.openai_backend import CompletionBackend, ProviderConfig
from roundtable.core.engine import EngineRegistry
from roundtable.core.executor import ToolExecutor
from roundtable.core.memory import DEFAULT_SUMMARY_MODEL, MemoryCompactor
from roundtable.core.registration import ApprovalBroker
from roundtable.core.tool_schemas import BUILTIN_CAPABILITIES
from roundtable.core.types import EngineConfig
from roundtable.infra import prompt_loader
from roundtable.infra.database import DEFAULT_DB, Store
from roundtable.infra.event_bus import EventBus
from roundtable.infra.resources import DEFAULT_IDLE_TIMEOUT, SessionResourcePool
from roundtable.interfaces.web_interface import WebInterface

CONFIG_FILE = Path("config.yaml")
LOG_DIR = Path("logs")

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


# ---------------------------------------------------------------------------
# Configuration loading
# ---------------------------------------------------------------------------

def _expand_env(value: Any) -> Any:
    """Replace ``${VAR}`` references in strings with environment values."""
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_config(path: Path = CONFIG_FILE) -> dict:
    if not path.exists():
        print(f"ERROR: {path} not found. Copy config.yaml.example and fill in your settings.")
        sys.exit(1)
    with path.open(encoding="utf-8") as fh:
        return _expand_env(yaml.safe_load(fh) or {})


def build_engine_config(cfg: dict) -> EngineConfig:
    raw = cfg.get("engine") or {}
    defaults = EngineConfig()
    return EngineConfig(
        turn_pause=float(raw.get("turn_pause", defaults.turn_pause)),
        infinite_pause=float(raw.get("infinite_pause", defaults.infinite_pause)),
        slow_delay=float(raw.get("slow_delay", defaults.slow_delay)),
        max_tokens=int(raw.get("max_tokens", defaults.max_tokens)),
        completion_timeout=float(raw.get("completion_timeout", defaults.completion_timeout)),
        tool_timeout=float(raw.get("tool_timeout", defaults.tool_timeout)),
        max_tool_rounds=int(raw.get("max_tool_rounds", defaults.max_tool_rounds)),
    )


def build_provider_configs(cfg: dict) -> dict[str, ProviderConfig]:
    """Parse the ``inference_backends`` list into named ProviderConfigs."""
    result: dict[str, ProviderConfig] = {}
    for entry in cfg.get("inference_backends") or []:
        name = entry["name"]
        if name in result:
            raise ValueError(f"Duplicate inference backend name: {name}")
        result[name] = ProviderConfig(
            name=name,
            model=entry.get("model", ""),
            max_tokens=int(entry.get("max_tokens", 4096)),
            provider=entry.get("provider", "openai"),
            api_key=entry.get("api_key", ""),
            base_url=entry.get("base_url", ""),
        )
    return result


def _role_backends(cfg: dict, role: str,
                   providers: dict[str, ProviderConfig]) -> list[ProviderConfig]:
    """Resolve ``llm.<role>`` (a name or list of names) to ProviderConfigs.

    Roles without their own entry share the ``main`` backends.
    """
    llm = cfg.get("llm") or {}
    names = llm.get(role)
    if names is None:
        if role == "main":
            return list(providers.values())
        names = llm.get("main") or list(providers)
    if isinstance(names, str):
        names = [names]
    unknown = [n for n in names if n not in providers]
    if unknown:
        raise ValueError(f"llm.{role} references unknown backends: {', '.join(unknown)}")
    return [providers[n] for n in names]


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(cfg: dict) -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    level_name = (cfg.get("logging") or {}).get("level", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)-20s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(fmt)
    console.setLevel(level)

    fh = logging.handlers.TimedRotatingFileHandler(
        LOG_DIR / "roundtable.log",
        when="midnight",
        backupCount=14,
        encoding="utf-8",
    )
    fh.setFormatter(fmt)
    fh.setLevel(logging.DEBUG)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(console)
    root.addHandler(fh)

    # Third-party HTTP clients are chatty at DEBUG.
    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Bootstrapping
# ---------------------------------------------------------------------------

def seed_builtin_capabilities(store: Store) -> int:
    """Ensure every built-in capability exists in the store.  Returns the number added."""
    added = sum(1 for cap in BUILTIN_CAPABILITIES if store.seed_builtin(cap))
    if added:
        logging.getLogger(__name__).info("Seeded %d built-in tools", added)
    return added


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

class ShutdownCoordinator:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def request_shutdown(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

async def main(config_path: Optional[Path] = None) -> None:
    cfg = load_config(config_path or CONFIG_FILE)
    setup_logging(cfg)
    logger = logging.getLogger("main")
    logger.info("Roundtable starting up")

    prompt_loader.validate_all()

    store = Store((cfg.get("database") or {}).get("path", DEFAULT_DB))
    store.init_db()
    seed_builtin_capabilities(store)

    engine_cfg = build_engine_config(cfg)
    providers = build_provider_configs(cfg)
    if not providers:
        logger.error("No inference_backends configured. Exiting.")
        sys.exit(1)

    completion = CompletionBackend.from_configs(
        _role_backends(cfg, "main", providers), timeout=engine_cfg.completion_timeout,
    )
    router = CompletionBackend.from_configs(
        _role_backends(cfg, "routing", providers), timeout=engine_cfg.completion_timeout,
    )
    summarizer = CompletionBackend.from_configs(
        _role_backends(cfg, "summarization", providers), timeout=engine_cfg.completion_timeout,
    )
    llm_raw = cfg.get("llm") or {}

    tools_cfg = cfg.get("tools") or {}
    resources = SessionResourcePool(
        idle_timeout=float(tools_cfg.get("resource_idle_timeout", DEFAULT_IDLE_TIMEOUT)),
    )
    bus = EventBus()
    approvals = ApprovalBroker(store, bus)
    executor = ToolExecutor(store, resources, timeout=engine_cfg.tool_timeout)
    compactor = MemoryCompactor(
        store, summarizer,
        summary_model=llm_raw.get("summary_model", DEFAULT_SUMMARY_MODEL),
    )
    registry = EngineRegistry(
        store=store,
        completion=completion,
        executor=executor,
        bus=bus,
        approvals=approvals,
        compactor=compactor,
        router=router,
        config=engine_cfg,
        scratchpad_path=Path(tools_cfg.get("scratchpad_path", tool_module.DEFAULT_SCRATCHPAD)),
    )

    web_cfg: dict = cfg.get("web") or {"enabled": True, "host": "127.0.0.1", "port": 8080}
    if not web_cfg.get("enabled", True):
        logger.error("Web interface is disabled - nothing to do. Exiting.")
        sys.exit(1)
    web_iface = WebInterface(
        host=web_cfg.get("host", "127.0.0.1"),
        port=web_cfg.get("port", 8080),
        store=store,
        registry=registry,
        bus=bus,
        approvals=approvals,
    )

    shutdown = ShutdownCoordinator()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.request_shutdown)

    tasks = [asyncio.create_task(web_iface.run(), name="web")]
    logger.info("All components started. Web interface at http://%s:%d",
                web_cfg.get("host", "127.0.0.1"), web_cfg.get("port", 8080))

    await shutdown.wait()
    logger.info("Shutdown requested - stopping components gracefully")

    registry.cancel_all()
    for task in tasks:
        if not task.done():
            task.cancel()
    try:
        await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=10.0)
    except asyncio.TimeoutError:
        logger.warning("Some tasks did not stop within 10 s, forcing exit")
    await resources.close_all()

    logger.info("Roundtable shutdown complete")


def run() -> None:
    """Entry point for the `roundtable` console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
