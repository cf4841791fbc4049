"""YAML configuration loader for Ledgerline.

Loads the seed config files from the config/ directory:
  chart_of_accounts.yaml, rules.yaml
"""

from pathlib import Path

import yaml

DEFAULT_FALLBACK_ACCOUNT_CODE = "000"


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._chart_of_accounts: dict[str, dict] | None = None
        self._rules: dict | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def chart_of_accounts(self) -> dict[str, dict]:
        """Return chart entries keyed by account code.

        Accepts either a mapping under ``accounts:`` (code → fields) or a
        list of entries that each carry a ``code`` key. Codes are always
        returned as strings so YAML integers like ``111`` still match.
        """
        if self._chart_of_accounts is None:
            data = self._load("chart_of_accounts.yaml")
            if isinstance(data, dict):
                data = data.get("accounts", data)

            chart: dict[str, dict] = {}
            if isinstance(data, dict):
                for code, fields in data.items():
                    chart[str(code)] = dict(fields or {})
            elif isinstance(data, list):
                for entry in data:
                    code = entry.get("code")
                    if code is None or code == "":
                        raise ValueError(
                            f"Chart of accounts entry missing code: {entry}"
                        )
                    fields = {k: v for k, v in entry.items() if k != "code"}
                    chart[str(code)] = fields
            else:
                raise ValueError("chart_of_accounts.yaml must be a mapping or a list")
            self._chart_of_accounts = chart
        return self._chart_of_accounts

    @property
    def rules(self) -> dict:
        if self._rules is None:
            self._rules = self._load("rules.yaml")
        return self._rules

    @property
    def keyword_rules(self) -> list[dict]:
        return self.rules.get("keyword_rules", []) or []

    @property
    def amount_rules(self) -> list[dict]:
        return self.rules.get("amount_rules", []) or []

    @property
    def fallback_account_code(self) -> str:
        """Code assigned when nothing matches. Default: '000'."""
        return str(self.rules.get("fallback_account_code", DEFAULT_FALLBACK_ACCOUNT_CODE))
