from __future__ import annotations

import logging

from imgpress.core.config import AppConfig
from imgpress.core.consent import ConsentState
from imgpress.core.ledger import ConversionLedger
from imgpress.core.preview import PreviewRegistry
from imgpress.core.settings import SettingsStore
from imgpress.core.storage import JsonFileStorage
from imgpress.ui.main_window import MainWindow


def main() -> None:
    config = AppConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    storage = JsonFileStorage(config.storage_path)
    registry = PreviewRegistry()
    ledger = ConversionLedger.load(storage, registry, history_limit=config.history_limit)
    settings_store = SettingsStore.load(storage)
    consent = ConsentState.load(storage)

    window = MainWindow(config, ledger, settings_store, consent)
    window.mainloop()


if __name__ == "__main__":
    main()
