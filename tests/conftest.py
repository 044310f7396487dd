"""Shared pytest fixtures for itemfilter tests."""
import logging
import tempfile
from pathlib import Path
from typing import Callable, Generator, List

import pytest

from itemfilter.core.logging import Logger
from itemfilter.schema import ItemData, ItemRarity, SocketInfo


class ListHandler(logging.Handler):
    """Collects log records for assertions."""

    def __init__(self):
        super().__init__()
        self.records: List[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)

    def messages(self, level: int = None) -> List[str]:
        return [r.getMessage() for r in self.records if level is None or r.levelno == level]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def log_handler() -> ListHandler:
    """Handler capturing records of the ``log`` fixture."""
    return ListHandler()


@pytest.fixture
def log(log_handler: ListHandler) -> Logger:
    """Logger that records into ``log_handler`` instead of the console."""
    return Logger(name="itemfilter.test", level="DEBUG", handlers=[log_handler])


@pytest.fixture
def write_filter(temp_dir: Path) -> Callable[[str], Path]:
    """Write filter text to a file and return its path."""

    def write(text: str, name: str = "pickit.ifl") -> Path:
        path = temp_dir / name
        path.write_text(text, encoding="utf-8")
        return path

    return write


@pytest.fixture
def chaos_orb() -> ItemData:
    """A stack of currency."""
    return ItemData(
        path="Metadata/Items/Currency/CurrencyRerollRare",
        class_name="StackableCurrency",
        base_name="Chaos Orb",
        stack_size=12,
        max_stack_size=20,
    )


@pytest.fixture
def unique_ring() -> ItemData:
    """An identified unique ring with a few mods."""
    return ItemData(
        class_name="Ring",
        base_name="Gold Ring",
        name="Andvarius",
        rarity=ItemRarity.UNIQUE,
        item_level=84,
        is_identified=True,
        mods=("ItemFoundRarityIncrease", "AllResistances"),
        stats={"item_found_rarity": 40.0},
    )


@pytest.fixture
def six_link() -> ItemData:
    """A six-linked body armour."""
    return ItemData(
        class_name="Body Armour",
        base_name="Astral Plate",
        rarity=ItemRarity.RARE,
        item_level=86,
        width=2,
        height=3,
        socket_info=SocketInfo(socket_number=6, largest_link_size=6, socket_groups=("RRGGBB",)),
    )
