"""Connection settings form backing the repair console."""

from __future__ import annotations

from textual.app import ComposeResult
from textual.containers import Grid
from textual.widgets import Input, Label

from clubconnect.config import ConnectionConfig

_FIELDS: tuple[tuple[str, str, str], ...] = (
    ("host", "Host:", "localhost"),
    ("port", "Port:", "5432"),
    ("database", "Database:", "clubconnect"),
    ("username", "User:", "postgres"),
    ("password", "Password:", ""),
)


class ConfigForm(Grid):
    """Editable host/port/database/user/password fields."""

    DEFAULT_CSS = """
    ConfigForm {
        grid-size: 4;
        grid-columns: 12 1fr 12 1fr;
        grid-gutter: 0 1;
        height: auto;
        padding: 1;
        border: round $primary 40%;
        border-title-color: $text;
    }

    ConfigForm Label {
        padding: 1 0 0 0;
        text-align: right;
        width: 100%;
    }
    """

    def __init__(self, config: ConnectionConfig) -> None:
        super().__init__(id="config-form")
        self.border_title = "Database Connection"
        self._field_inputs: dict[str, Input] = {
            name: Input(
                value=str(getattr(config, name)),
                placeholder=placeholder,
                password=name == "password",
                id=f"config-{name}",
            )
            for name, _, placeholder in _FIELDS
        }
        self._field_labels = {name: label for name, label, _ in _FIELDS}

    def compose(self) -> ComposeResult:
        for name, _, _ in _FIELDS:
            yield Label(self._field_labels[name])
            yield self._field_inputs[name]

    def value(self, name: str) -> str:
        return self._field_inputs[name].value.strip()

    def to_config(self) -> ConnectionConfig:
        """Build a config from the current field values.

        Raises ValueError when the port is not a number.
        """

        port_text = self.value("port")
        try:
            port = int(port_text)
        except ValueError:
            raise ValueError(f"Port must be a number, got '{port_text}'.") from None
        return ConnectionConfig(
            host=self.value("host") or "localhost",
            port=port,
            database=self.value("database"),
            username=self.value("username"),
            password=self._field_inputs["password"].value,
        )


__all__ = ["ConfigForm"]
