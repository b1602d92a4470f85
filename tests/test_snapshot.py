import pytest
import structlog

import holder_snapshot
from holder_snapshot import (
    BalanceTotal,
    CONFIG_ENV_VAR,
    Checkpoint,
    EventStore,
    HolderSnapshot,
    IngestionReport,
    ResolutionError,
    SnapshotResult,
    main,
)

from fakes import ALICE, BOB, CAROL, FakeLedgerSource, block_timestamp, mint, transfer

ETHER = 10**18


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def snapshot_config(app_config):
    return app_config(
        GENESIS_BLOCK=100,
        TIMESTAMP_TOLERANCE_SEC=0,
        REQUESTS_PER_SECOND=1000,
        BALANCE_RETRY_DELAY_MS=0,
        WINDOW_RETRY_DELAY_MS=0,
    )


@pytest.mark.asyncio
async def test_snapshot_end_to_end(snapshot_config):
    cached = EventStore(snapshot_config.sqlite_path)
    cached.bulk_insert([mint(100, 0, ALICE, "1"), transfer(150, 0, ALICE, BOB, "1")])
    cached.close()

    source = FakeLedgerSource(
        events=[mint(170, 0, CAROL, "2"), mint(260, 0, ALICE, "3")],
        balances={ALICE: 7 * ETHER, BOB: 2 * ETHER, CAROL: 3 * ETHER},
    )

    async with HolderSnapshot(snapshot_config, source=source) as snapshot:
        result = await snapshot.run(block_timestamp(200))

    assert result.checkpoint.number == 200
    assert source.range_calls == [(151, 200)]
    assert result.tokens == 2
    assert result.owners == [BOB, CAROL]
    assert sorted(source.balance_calls) == sorted([(BOB, 200), (CAROL, 200)])
    assert result.total.ether == "5.0"


@pytest.mark.asyncio
async def test_snapshot_is_repeatable(snapshot_config):
    source = FakeLedgerSource(
        events=[mint(120, 0, ALICE, "1"), transfer(130, 0, ALICE, BOB, "1")],
        balances={BOB: ETHER},
    )

    async with HolderSnapshot(snapshot_config, source=source) as snapshot:
        first = await snapshot.run(block_timestamp(300))
    calls = list(source.range_calls)

    async with HolderSnapshot(snapshot_config, source=source) as snapshot:
        second = await snapshot.run(block_timestamp(300))

    # the cursor follows the last cached event, so only the tail is fetched again
    assert source.range_calls[len(calls):] == [(131, 300)]
    assert second.ingestion.events_inserted == 0
    assert first.total.total_wei == second.total.total_wei == ETHER


@pytest.mark.asyncio
async def test_unresolvable_timestamp_raises(snapshot_config):
    source = FakeLedgerSource(height=500)

    async with HolderSnapshot(snapshot_config, source=source) as snapshot:
        with pytest.raises(ResolutionError):
            await snapshot.run(block_timestamp(200) + 5)

    assert source.range_calls == []
    assert source.balance_calls == []


def fake_result(total_wei):
    return SnapshotResult(
        checkpoint=Checkpoint(number=200, timestamp=block_timestamp(200)),
        ingestion=IngestionReport(target_block=200, start_block=100),
        tokens=1,
        total=BalanceTotal(total_wei=total_wei, owners=1, completed=1),
    )


def test_main_prints_total(monkeypatch, capsys, write_config):
    monkeypatch.setenv(CONFIG_ENV_VAR, write_config())
    seen = []

    async def fake_main_async(cfg, target_ts):
        seen.append(target_ts)
        return fake_result(5 * ETHER)

    monkeypatch.setattr(holder_snapshot, "main_async", fake_main_async)

    main(["1700000000"])

    assert seen == [1700000000]
    assert capsys.readouterr().out.strip() == "5.0"


def test_main_exits_on_resolution_failure(monkeypatch, write_config):
    monkeypatch.setenv(CONFIG_ENV_VAR, write_config())

    async def fake_main_async(cfg, target_ts):
        raise ResolutionError(target_ts, 300)

    monkeypatch.setattr(holder_snapshot, "main_async", fake_main_async)

    with pytest.raises(SystemExit) as excinfo:
        main(["42"])

    assert "snapshot failed" in str(excinfo.value.code)


def test_main_rejects_bad_config(monkeypatch, tmp_path):
    monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "missing.json"))

    with pytest.raises(SystemExit) as excinfo:
        main(["42"])

    assert "config error" in str(excinfo.value.code)


def test_main_rejects_non_numeric_timestamp(monkeypatch, write_config):
    monkeypatch.setenv(CONFIG_ENV_VAR, write_config())

    with pytest.raises(SystemExit) as excinfo:
        main(["yesterday"])

    assert excinfo.value.code == 2
