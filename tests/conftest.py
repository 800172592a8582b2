"""Shared pytest fixtures and utilities for Kadaele POS tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator, List, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from kadaele_pos import cli, constants, core_logic  # noqa: E402
from kadaele_pos.data_manager import SyncQueueEntry  # noqa: E402
from kadaele_pos.errors import SyncError  # noqa: E402
from kadaele_pos.network import NetworkStatus  # noqa: E402
from kadaele_pos.record_store import RecordStore  # noqa: E402
from setup_excel import create_store_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
START = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Sync]\n"
    "Endpoint = {endpoint}\n"
    "TimeEndpoint =\n"
    "TimeoutSeconds = 5\n"
    "StartOnline = {start_online}\n\n"
    "[Photos]\n"
    "Directory = photos\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


class FixedClock:
    """Deterministic time source that only moves when told to."""

    def __init__(self, moment: datetime = START) -> None:
        self.moment = moment

    def now(self) -> datetime:
        return self.moment

    def advance(self, **delta: float) -> datetime:
        self.moment = self.moment + timedelta(**delta)
        return self.moment


@dataclass
class FakeTransport:
    """Records delivered batches; ``fail``/``reject`` simulate remote trouble."""

    fail: bool = False
    reject: bool = False
    batches: List[List[SyncQueueEntry]] = field(default_factory=list)
    on_deliver: Callable[[Sequence[SyncQueueEntry]], None] | None = None

    def deliver(self, entries: Sequence[SyncQueueEntry]) -> bool:
        if self.on_deliver is not None:
            self.on_deliver(entries)
        if self.fail:
            raise SyncError("remote unreachable")
        self.batches.append(list(entries))
        return not self.reject

    @property
    def delivered_keys(self) -> List[str]:
        return [entry.key for batch in self.batches for entry in batch]


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "kadaele_store.xlsx",
        with_sample_goods: bool = False,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_store_workbook(workbook_path, overwrite=True, with_sample_goods=with_sample_goods)
        return workbook_path

    return _create_workbook


@pytest.fixture
def store_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh store workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def store(store_workbook_path: Path) -> RecordStore:
    """Open a record store over a fresh workbook."""

    return RecordStore.open(store_workbook_path)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        endpoint: str = "",
        start_online: bool = False,
        with_sample_goods: bool = False,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", with_sample_goods=with_sample_goods)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                endpoint=endpoint,
                start_online="yes" if start_online else "no",
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def network() -> NetworkStatus:
    return NetworkStatus(online=False)


@pytest.fixture
def runtime_context(
    config_file: Path,
    clock: FixedClock,
    transport: FakeTransport,
    network: NetworkStatus,
) -> Iterator[core_logic.RuntimeContext]:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file, transport=transport, network=network, clock=clock)
    core_logic.ensure_schema_version(context)
    try:
        yield context
    finally:
        core_logic.close_context(context)


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="kadaele-pos", description="Kadaele POS CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
