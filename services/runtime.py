"""
Runtime wiring - Build a ready-to-run engine from configuration
===============================================================

Shared by the CLI, the web dashboard and the terminal viewer so they all
assemble the same pipeline:

    TmuxActuator -> ActionDispatcher -> RuleEngine <- RuleStore
"""

from typing import Optional

from core.config import Config
from core.logging import get_logger
from rules.engine import RuleEngine, RuleSet
from rules.store import RuleStore

from .actuator import Actuator, TmuxActuator
from .dispatcher import ActionDispatcher
from .watcher import SessionWatcher

logger = get_logger("services.runtime")


def build_engine(
    config: Config,
    actuator: Optional[Actuator] = None,
    load_rules: bool = True
) -> RuleEngine:
    """
    Create a rule engine wired to a dispatcher and actuator.

    Args:
        config: Application configuration
        actuator: Actuator to use (TmuxActuator by default)
        load_rules: Load the rule file into the engine

    Raises:
        ConfigError: If the rule file cannot be loaded
    """
    actuator = actuator or TmuxActuator(config.actuator)
    dispatcher = ActionDispatcher(actuator, max_workers=config.engine.dispatch_workers)
    engine = RuleEngine(dispatcher, config.engine)

    if load_rules:
        reload_rules(engine, RuleStore(config.rules_path))

    return engine


def build_watcher(config: Config, engine: RuleEngine) -> SessionWatcher:
    return SessionWatcher(engine, config.actuator, config.watcher)


def reload_rules(engine: RuleEngine, store: RuleStore) -> RuleSet:
    """
    Load the rule file and publish it.

    The engine keeps its current rules if the file is invalid.
    """
    snapshot = engine.load_rules(store.load())
    logger.info(f"Rules loaded from {store.path} (version {snapshot.version})")
    return snapshot
