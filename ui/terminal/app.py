"""
Textual Application - Activity viewer TUI
=========================================

This module implements the Textual TUI for Session Autopilot: live
activity, the loaded rules and a dry-run tester, with the session
watcher running in the background.
"""

from typing import Optional

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.widgets import (
    Header, Footer, Static, Button, Input, Label,
    DataTable, TabbedContent, TabPane
)
from textual.binding import Binding

from core.config import Config, load_config
from core.exceptions import ConfigError
from core.logging import get_logger
from rules.engine import RuleEngine
from rules.store import RuleStore
from services.runtime import build_engine, build_watcher, reload_rules
from services.watcher import SessionWatcher

logger = get_logger("tui.app")


def _truncate(text: str, width: int) -> str:
    text = " ".join(text.split())
    return text[:width - 1] + "…" if len(text) > width else text


class StatusBar(Static):
    """One-line engine summary."""

    def refresh_status(self, engine: RuleEngine, watcher: SessionWatcher) -> None:
        stats = engine.get_stats()
        outcomes = stats["activity"]["outcomes"]
        status = watcher.get_status()
        self.update(
            f"Rules: {stats['enabled_rules']}/{stats['rules']} enabled (v{stats['rule_set_version']})  |  "
            f"Sessions: {len(status['sessions'])}  |  "
            f"Triggered: {outcomes['triggered']}  Suppressed: {outcomes['suppressed']}  "
            f"Failed: {outcomes['failed']}  |  "
            f"Watcher: {'running' if status['running'] else 'stopped'}"
        )


class ActivityWidget(Container):
    """Recent trigger and suppression decisions."""

    def __init__(self, engine: RuleEngine, rows: int = 100, **kwargs):
        super().__init__(**kwargs)
        self.engine = engine
        self.rows = rows

    def compose(self) -> ComposeResult:
        yield DataTable(id="activity-table")

    def on_mount(self) -> None:
        table = self.query_one(DataTable)
        table.add_columns("Time", "Session", "Rule", "Outcome", "Actions", "Matched")
        table.cursor_type = "row"
        self.load_activity()

    def load_activity(self) -> None:
        table = self.query_one(DataTable)
        table.clear()

        for entry in self.engine.recent_activity(self.rows):
            if entry.suppressed_reason:
                outcome = f"⏸ {entry.suppressed_reason}"
            elif entry.outcome == "failed":
                outcome = "✗ failed"
            else:
                outcome = "✓ triggered"
            actions = ", ".join(f"{a.type}:{a.status.value}" for a in entry.actions_fired) or "-"
            table.add_row(
                entry.timestamp.strftime("%H:%M:%S"),
                entry.session_id,
                entry.rule_id,
                outcome,
                _truncate(actions, 40),
                _truncate(entry.matched_text, 40),
            )


class RulesWidget(Container):
    """Loaded rules in evaluation order."""

    def __init__(self, engine: RuleEngine, **kwargs):
        super().__init__(**kwargs)
        self.engine = engine

    def compose(self) -> ComposeResult:
        yield DataTable(id="rules-table")

    def on_mount(self) -> None:
        table = self.query_one(DataTable)
        table.add_columns("Order", "Id", "Category", "On", "States", "Cooldown", "Per hour", "Actions")
        table.cursor_type = "row"
        self.load_rules()

    def load_rules(self) -> None:
        table = self.query_one(DataTable)
        table.clear()

        for rule in self.engine.rules:
            table.add_row(
                str(rule.order),
                rule.id,
                rule.category.value,
                "✓" if rule.enabled else "✗",
                ",".join(sorted(rule.session_states)) or "any",
                f"{rule.cooldown_seconds:g}s",
                str(rule.max_triggers_per_hour or "∞"),
                ", ".join(a.type.value for a in rule.actions),
            )


class TestWidget(Container):
    """Dry-run a piece of text against the loaded rules."""

    def __init__(self, engine: RuleEngine, **kwargs):
        super().__init__(**kwargs)
        self.engine = engine

    def compose(self) -> ComposeResult:
        yield Label("Session output to test:", classes="input-label")
        yield Input(placeholder="e.g. Continue? [y/n]", id="test-input")
        yield Label("Session state (optional):", classes="input-label")
        yield Input(placeholder="working", id="test-state")

        with Horizontal(classes="button-row"):
            yield Button("Test Rules", id="test-rules-btn", variant="primary")

        yield Static(id="test-result", classes="response-box")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "test-rules-btn":
            self.run_test()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self.run_test()

    def run_test(self) -> None:
        text = self.query_one("#test-input", Input).value
        state = self.query_one("#test-state", Input).value.strip() or None
        result_widget = self.query_one("#test-result", Static)

        if not text.strip():
            self.app.notify("Please enter some text!", severity="warning")
            return

        results = self.engine.evaluate(text, state)
        if not results:
            result_widget.update("No rule matches.")
            return

        lines = []
        for result in results:
            marker = " (filtered by state)" if result.state_filtered else ""
            lines.append(f"▶ {result.rule_id}{marker}  match={result.full_match!r}")
            for action in result.actions:
                delay = f" after {action['delayMs']}ms" if action["delayMs"] else ""
                lines.append(f"    {action['type']}: {action['value']!r}{delay}")
        result_widget.update("\n".join(lines))


class AutopilotApp(App):
    """
    Session Autopilot Terminal UI Application.

    Shows what the rule engine is doing while the session watcher runs
    in the background.
    """

    TITLE = "Session Autopilot"

    CSS = """
    Screen {
        background: $surface;
    }

    #status-bar {
        height: 1;
        padding: 0 1;
        background: $panel;
        color: $text;
    }

    .input-label {
        color: $text-muted;
        margin: 1 0 0 0;
    }

    .button-row {
        height: auto;
        margin: 1 0;
    }

    .response-box {
        background: $panel;
        border: solid $primary;
        padding: 1;
        min-height: 6;
    }

    DataTable {
        height: 100%;
    }

    TabbedContent {
        height: 1fr;
    }

    TabPane {
        padding: 1;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "reload", "Reload rules"),
        Binding("a", "show_tab('activity')", "Activity"),
        Binding("u", "show_tab('rules')", "Rules"),
        Binding("t", "show_tab('test')", "Test"),
    ]

    def __init__(
        self,
        config: Optional[Config] = None,
        engine: Optional[RuleEngine] = None,
        watcher: Optional[SessionWatcher] = None,
        start_watcher: bool = True
    ):
        super().__init__()

        self.config = config or load_config()
        self.engine = engine or build_engine(self.config)
        self.watcher = watcher or build_watcher(self.config, self.engine)
        self.rule_store = RuleStore(self.config.rules_path)
        self.start_watcher = start_watcher

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield StatusBar(id="status-bar")

        with TabbedContent(id="main-tabs"):
            with TabPane("Activity", id="activity"):
                yield ActivityWidget(self.engine, rows=self.config.ui.activity_rows)
            with TabPane("Rules", id="rules"):
                yield RulesWidget(self.engine)
            with TabPane("Test", id="test"):
                yield TestWidget(self.engine)

        yield Footer()

    def on_mount(self) -> None:
        if self.start_watcher:
            self.watcher.start()
        self.set_interval(self.config.ui.tui_refresh_rate, self.refresh_views)
        self.refresh_views()

    def refresh_views(self) -> None:
        self.query_one(StatusBar).refresh_status(self.engine, self.watcher)
        self.query_one(ActivityWidget).load_activity()

    def action_reload(self) -> None:
        try:
            snapshot = reload_rules(self.engine, self.rule_store)
        except ConfigError as e:
            self.notify(f"Rules not reloaded: {e.message}", severity="error", timeout=8)
            return

        self.query_one(RulesWidget).load_rules()
        self.refresh_views()
        self.notify(f"Loaded {len(snapshot.rules)} rules (v{snapshot.version})")

    def action_show_tab(self, tab: str) -> None:
        self.query_one(TabbedContent).active = tab

    def action_quit(self) -> None:
        self.exit()

    def on_unmount(self) -> None:
        self.watcher.stop()
        self.engine.shutdown()


def run_tui(config: Optional[Config] = None) -> None:
    app = AutopilotApp(config=config)
    app.run()


if __name__ == "__main__":
    run_tui()
