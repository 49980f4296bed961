"""Contract ABIs shipped with metarelay."""

from importlib import resources
from typing import Any, List
import json

HUB_ABI_FILE = "meta_tx_hub.json"


def load_contract_abi(filename: str) -> List[Any]:
    """Load an ABI JSON file from the contracts package."""
    with resources.files(__package__).joinpath(filename).open("r", encoding="utf-8") as fh:
        return json.load(fh)


__all__ = ["HUB_ABI_FILE", "load_contract_abi"]
