import argparse
import asyncio
import json
import logging
import os
import sqlite3
import sys
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import aiohttp
import structlog

TRANSFER_TOPIC0 = (
    "0xddf252ad1be2c89b69c2b068fc378daa"
    "952ba7f163c4a11628f55a4df523b3ef"
)
ZERO_ADDRESS = "0x" + ("0" * 40)
WEI_PER_ETHER = 10 ** 18

DEFAULT_CONTRACT_ADDR = "0xbc4ca0eda7647a8ab7c2061c2e118a18a936f13d"
DEFAULT_GENESIS_BLOCK = 12286690
DEFAULT_CONFIG_PATH = "./config.json"
CONFIG_ENV_VAR = "HOLDER_SNAPSHOT_CONFIG"

TIMESTAMP_TOLERANCE_SEC = 300
INITIAL_CHUNK_SIZE = 50000
MIN_CHUNK_SIZE = 100
MAX_CHUNK_SIZE = 150000
MAX_LOGS_PER_QUERY = 9500
MIN_LOGS_TO_INCREASE_CHUNK = 1000
WINDOW_RETRY_DELAY_SEC = 0.15
BALANCE_RETRY_DELAY_SEC = 2.0
DEFAULT_REQUESTS_PER_SECOND = 25

# Substrings providers use when eth_getLogs is rejected for returning too many results.
RESULT_LIMIT_MARKERS = (
    "query returned more than",
    "exceeds max results",
    "log response size exceeded",
    "response size exceeded",
    "too many results",
)

log = structlog.get_logger(__name__)


def setup_logging(level: str = "info", json_logs: bool = False) -> None:
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level)

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    return int(value, 16)


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    return "0x" + topic[-40:]


def wei_to_ether_str(value: int) -> str:
    """Render a wei amount as an ether string without going through floats.

    Matches the usual "1.0" / "0.000000000000000015" formatting: trailing
    zeros are dropped but at least one fractional digit is kept.
    """
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), WEI_PER_ETHER)
    frac_str = str(frac).rjust(18, "0").rstrip("0") or "0"
    return f"{sign}{whole}.{frac_str}"


class SnapshotError(Exception):
    pass


class ConfigError(SnapshotError, ValueError):
    pass


class ResolutionError(SnapshotError):
    def __init__(self, target_ts: int, tolerance_sec: int):
        super().__init__(
            f"could not find a block within {tolerance_sec}s of timestamp {target_ts}"
        )
        self.target_ts = target_ts
        self.tolerance_sec = tolerance_sec


class RPCError(SnapshotError):
    def __init__(self, code: Optional[int], message: str, data: Any = None):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class QueryResultLimitError(RPCError):
    pass


class BalanceFetchError(SnapshotError):
    def __init__(self, address: str, block_number: int, attempts: int):
        super().__init__(
            f"could not get balance for {address} at block {block_number} after {attempts} attempts"
        )
        self.address = address
        self.block_number = block_number
        self.attempts = attempts


def classify_rpc_error(error: Any) -> RPCError:
    if isinstance(error, dict):
        code = error.get("code")
        message = str(error.get("message", ""))
        data = error.get("data")
    else:
        code, message, data = None, str(error), None
    lowered = message.lower()
    if any(marker in lowered for marker in RESULT_LIMIT_MARKERS):
        return QueryResultLimitError(code, message, data)
    return RPCError(code, message, data)


@dataclass(frozen=True)
class TransferEvent:
    block_number: int
    log_index: int
    tx_hash: str
    from_addr: str
    to_addr: str
    token_id: str

    @property
    def key(self) -> Tuple[int, int, str]:
        return (self.block_number, self.log_index, self.tx_hash)


@dataclass(frozen=True)
class Checkpoint:
    number: int
    timestamp: int


@dataclass(frozen=True)
class RetryPolicy:
    """How long to wait between attempts and when to give up.

    ``max_attempts=None`` retries forever. ``multiplier=1.0`` gives a fixed
    delay, anything larger grows the delay exponentially up to
    ``max_delay_sec``.
    """

    delay_sec: float
    max_attempts: Optional[int] = None
    multiplier: float = 1.0
    max_delay_sec: Optional[float] = None

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        delay = self.delay_sec * (self.multiplier ** max(0, attempt - 1))
        if self.max_delay_sec is not None:
            delay = min(delay, self.max_delay_sec)
        return delay


@dataclass
class AppConfig:
    http_rpc_url: str
    balance_rpc_url: Optional[str]
    contract_addr: str
    genesis_block: int
    sqlite_path: str
    requests_per_second: float
    timestamp_tolerance_sec: int
    initial_chunk_blocks: int
    min_chunk_blocks: int
    max_chunk_blocks: int
    max_logs_per_query: int
    min_logs_to_increase_chunk: int
    window_retry_delay_ms: int
    window_max_attempts: Optional[int]
    balance_retry_delay_ms: int
    balance_max_attempts: Optional[int]
    max_rpc_retries: int
    rpc_timeout_sec: int
    log_level: str
    log_json: bool

    def window_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            delay_sec=self.window_retry_delay_ms / 1000,
            max_attempts=self.window_max_attempts,
        )

    def balance_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            delay_sec=self.balance_retry_delay_ms / 1000,
            max_attempts=self.balance_max_attempts,
        )


def _optional_positive_int(raw: Dict[str, Any], key: str) -> Optional[int]:
    value = raw.get(key)
    if value is None:
        return None
    value = int(value)
    if value <= 0:
        raise ConfigError(f"{key} must be >= 1 or null")
    return value


def load_config(path: str) -> AppConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"config file {path} is not valid JSON: {e}") from e

    http_rpc_url = str(raw.get("HTTP_RPC_URL", "")).strip()
    if not http_rpc_url:
        raise ConfigError("HTTP_RPC_URL is required")
    balance_rpc_url_raw = str(raw.get("BALANCE_RPC_URL", "")).strip()
    balance_rpc_url = balance_rpc_url_raw or None

    try:
        contract_addr = normalize_address(raw.get("CONTRACT_ADDR", DEFAULT_CONTRACT_ADDR))
    except ValueError as e:
        raise ConfigError(f"CONTRACT_ADDR is invalid: {e}") from e

    genesis_block = int(raw.get("GENESIS_BLOCK", DEFAULT_GENESIS_BLOCK))
    if genesis_block < 0:
        raise ConfigError("GENESIS_BLOCK must be >= 0")

    requests_per_second = float(raw.get("REQUESTS_PER_SECOND", DEFAULT_REQUESTS_PER_SECOND))
    if requests_per_second <= 0:
        raise ConfigError("REQUESTS_PER_SECOND must be > 0")

    min_chunk_blocks = int(raw.get("MIN_CHUNK_BLOCKS", MIN_CHUNK_SIZE))
    max_chunk_blocks = int(raw.get("MAX_CHUNK_BLOCKS", MAX_CHUNK_SIZE))
    initial_chunk_blocks = int(raw.get("INITIAL_CHUNK_BLOCKS", INITIAL_CHUNK_SIZE))
    if min_chunk_blocks <= 0:
        raise ConfigError("MIN_CHUNK_BLOCKS must be >= 1")
    if max_chunk_blocks < min_chunk_blocks:
        raise ConfigError("MAX_CHUNK_BLOCKS must be >= MIN_CHUNK_BLOCKS")

    window_retry_delay_ms = int(raw.get("WINDOW_RETRY_DELAY_MS", int(WINDOW_RETRY_DELAY_SEC * 1000)))
    balance_retry_delay_ms = int(raw.get("BALANCE_RETRY_DELAY_MS", int(BALANCE_RETRY_DELAY_SEC * 1000)))
    if window_retry_delay_ms < 0 or balance_retry_delay_ms < 0:
        raise ConfigError("retry delays must be >= 0")

    max_rpc_retries = int(raw.get("MAX_RPC_RETRIES", 5))
    if max_rpc_retries <= 0:
        raise ConfigError("MAX_RPC_RETRIES must be >= 1")

    timestamp_tolerance_sec = int(raw.get("TIMESTAMP_TOLERANCE_SEC", TIMESTAMP_TOLERANCE_SEC))
    if timestamp_tolerance_sec < 0:
        raise ConfigError("TIMESTAMP_TOLERANCE_SEC must be >= 0")

    max_logs_per_query = int(raw.get("MAX_LOGS_PER_QUERY", MAX_LOGS_PER_QUERY))
    min_logs_to_increase_chunk = int(
        raw.get("MIN_LOGS_TO_INCREASE_CHUNK", MIN_LOGS_TO_INCREASE_CHUNK)
    )
    if max_logs_per_query <= 0:
        raise ConfigError("MAX_LOGS_PER_QUERY must be >= 1")
    if min_logs_to_increase_chunk < 0:
        raise ConfigError("MIN_LOGS_TO_INCREASE_CHUNK must be >= 0")

    log_json = raw.get("LOG_JSON", False)
    if not isinstance(log_json, bool):
        raise ConfigError("LOG_JSON must be true or false")

    return AppConfig(
        http_rpc_url=http_rpc_url,
        balance_rpc_url=balance_rpc_url,
        contract_addr=contract_addr,
        genesis_block=genesis_block,
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/events.db")),
        requests_per_second=requests_per_second,
        timestamp_tolerance_sec=timestamp_tolerance_sec,
        initial_chunk_blocks=initial_chunk_blocks,
        min_chunk_blocks=min_chunk_blocks,
        max_chunk_blocks=max_chunk_blocks,
        max_logs_per_query=max_logs_per_query,
        min_logs_to_increase_chunk=min_logs_to_increase_chunk,
        window_retry_delay_ms=window_retry_delay_ms,
        window_max_attempts=_optional_positive_int(raw, "WINDOW_MAX_ATTEMPTS"),
        balance_retry_delay_ms=balance_retry_delay_ms,
        balance_max_attempts=_optional_positive_int(raw, "BALANCE_MAX_ATTEMPTS"),
        max_rpc_retries=max_rpc_retries,
        rpc_timeout_sec=int(raw.get("RPC_TIMEOUT_SEC", 30)),
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        log_json=log_json,
    )


class RPCClient:
    def __init__(self, url: str, max_retries: int = 5, timeout_sec: int = 30):
        self.url = url
        self.retry_policy = RetryPolicy(delay_sec=0.5, max_attempts=max_retries, multiplier=2.0)
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._session.post(self.url, json=payload) as resp:
                    if resp.status == 429 or resp.status >= 500:
                        resp.raise_for_status()
                    data = await resp.json(content_type=None)
                if "error" in data:
                    raise classify_rpc_error(data["error"])
                return data.get("result")
            except QueryResultLimitError:
                # Retrying the same range cannot succeed; the caller has to narrow it.
                raise
            except Exception as e:
                if self.retry_policy.exhausted(attempt):
                    raise
                delay = self.retry_policy.delay_for(attempt)
                log.debug("rpc_retry", method=method, attempt=attempt, delay_sec=delay, error=str(e))
                await asyncio.sleep(delay)

    async def get_block_by_number(self, block_number: int) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getBlockByNumber", [hex(block_number), False])

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return int(result, 16)

    async def get_balance(self, address: str, block_number: int) -> int:
        result = await self.call("eth_getBalance", [address, hex(block_number)])
        return parse_hex_int(result)

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
    ) -> List[Dict[str, Any]]:
        f: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            f["address"] = address
        if topics:
            f["topics"] = topics
        result = await self.call("eth_getLogs", [f])
        return result or []


def decode_transfer_log(lg: Dict[str, Any]) -> Optional[TransferEvent]:
    """Decode an ERC-721 Transfer log; ERC-20 style logs (3 topics) are skipped."""
    if lg.get("removed"):
        return None
    topics = lg.get("topics") or []
    if len(topics) != 4 or str(topics[0]).lower() != TRANSFER_TOPIC0:
        return None
    return TransferEvent(
        block_number=parse_hex_int(lg.get("blockNumber")),
        log_index=parse_hex_int(lg.get("logIndex")),
        tx_hash=str(lg.get("transactionHash", "")).lower(),
        from_addr=decode_topic_address(topics[1]),
        to_addr=decode_topic_address(topics[2]),
        token_id=str(int(topics[3], 16)),
    )


class LedgerSource:
    """Remote view of one collection: block heights, balances and Transfer logs."""

    def __init__(
        self,
        rpc: RPCClient,
        contract_addr: str,
        balance_rpc: Optional[RPCClient] = None,
    ):
        self.rpc = rpc
        self.balance_rpc = balance_rpc or rpc
        self.contract_addr = normalize_address(contract_addr)

    async def current_height(self) -> int:
        return await self.rpc.get_latest_block_number()

    async def checkpoint_at(self, block_number: int) -> Optional[Checkpoint]:
        block = await self.rpc.get_block_by_number(block_number)
        if not block:
            return None
        return Checkpoint(
            number=parse_hex_int(block.get("number")) if block.get("number") else block_number,
            timestamp=parse_hex_int(block["timestamp"]),
        )

    async def balance_of(self, address: str, block_number: int) -> int:
        return await self.balance_rpc.get_balance(address, block_number)

    async def transfer_events_in_range(self, from_block: int, to_block: int) -> List[TransferEvent]:
        logs = await self.rpc.get_logs(
            from_block=from_block,
            to_block=to_block,
            address=self.contract_addr,
            topics=[TRANSFER_TOPIC0],
        )
        events = [e for e in (decode_transfer_log(lg) for lg in logs) if e is not None]
        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events


Task = Callable[[], Awaitable[Any]]


class RateLimiter:
    """Starts queued tasks in FIFO order, at most one start per ``interval``.

    The spacing is enforced between consecutive starts, not per window, so a
    burst of ``add`` calls is smoothed out. Tasks that are still running do
    not hold back the next start. The returned future carries the task's own
    result or exception; cancelling it drops a queued task or cancels a
    running one.
    """

    def __init__(self, requests_per_second: float):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be > 0")
        self.interval = 1.0 / requests_per_second
        self._queue: Deque[Tuple[Task, "asyncio.Future[Any]"]] = deque()
        self._last_dispatch: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._running: Set["asyncio.Task[None]"] = set()
        self.dispatched = 0

    @property
    def pending(self) -> int:
        return sum(1 for _, future in self._queue if not future.done())

    def add(self, task: Task) -> "asyncio.Future[Any]":
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[Any]" = loop.create_future()
        self._queue.append((task, future))
        self._dispatch()
        return future

    def _dispatch(self) -> None:
        # entries cancelled while queued are dropped without running
        while self._queue and self._queue[0][1].done():
            self._queue.popleft()
        if self._timer is not None or not self._queue:
            return
        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._last_dispatch is not None:
            wait = self.interval - (now - self._last_dispatch)
            if wait > 0:
                self._timer = loop.call_later(wait, self._on_timer)
                return

        task, future = self._queue.popleft()
        self._last_dispatch = now
        self.dispatched += 1
        runner = loop.create_task(self._run(task, future))
        self._running.add(runner)
        runner.add_done_callback(self._running.discard)
        future.add_done_callback(lambda f: runner.cancel() if f.cancelled() else None)
        if self._queue:
            self._timer = loop.call_later(self.interval, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._dispatch()

    async def _run(self, task: Task, future: "asyncio.Future[Any]") -> None:
        try:
            result = await task()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._dispatch()


class EventStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;

            CREATE TABLE IF NOT EXISTS transfers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                block_number INTEGER NOT NULL,
                log_index INTEGER NOT NULL,
                tx_hash TEXT NOT NULL,
                from_addr TEXT NOT NULL,
                to_addr TEXT NOT NULL,
                token_id TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                UNIQUE(block_number, log_index, tx_hash)
            );

            CREATE INDEX IF NOT EXISTS idx_transfers_block
                ON transfers(block_number, log_index);
            CREATE INDEX IF NOT EXISTS idx_transfers_from ON transfers(from_addr);
            CREATE INDEX IF NOT EXISTS idx_transfers_to ON transfers(to_addr);
            CREATE INDEX IF NOT EXISTS idx_transfers_token ON transfers(token_id);
            """
        )
        self.conn.commit()

    def _event_tuple(self, event: TransferEvent, now: int) -> Tuple[Any, ...]:
        return (
            int(event.block_number),
            int(event.log_index),
            event.tx_hash,
            event.from_addr,
            event.to_addr,
            str(event.token_id),
            now,
        )

    def bulk_insert(self, events: Sequence[TransferEvent]) -> int:
        """Insert a window of events in one transaction; returns rows actually added."""
        if not events:
            return 0
        now = int(time.time())
        inserted = 0
        cur = self.conn.cursor()
        cur.execute("BEGIN")
        try:
            for e in events:
                cur.execute(
                    """
                    INSERT OR IGNORE INTO transfers(
                        block_number, log_index, tx_hash, from_addr, to_addr, token_id, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    self._event_tuple(e, now),
                )
                if cur.rowcount == 1:
                    inserted += 1
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return inserted

    def events_in_range(self, from_block: int, to_block: int) -> List[TransferEvent]:
        rows = self.conn.execute(
            """
            SELECT block_number, log_index, tx_hash, from_addr, to_addr, token_id
            FROM transfers
            WHERE block_number >= ? AND block_number <= ?
            ORDER BY block_number ASC, log_index ASC
            """,
            (from_block, to_block),
        ).fetchall()
        return [
            TransferEvent(
                block_number=int(r["block_number"]),
                log_index=int(r["log_index"]),
                tx_hash=r["tx_hash"],
                from_addr=r["from_addr"],
                to_addr=r["to_addr"],
                token_id=r["token_id"],
            )
            for r in rows
        ]

    def highest_block(self) -> int:
        row = self.conn.execute("SELECT MAX(block_number) AS max_block FROM transfers").fetchone()
        if row is None or row["max_block"] is None:
            return -1
        return int(row["max_block"])

    def count_events(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS n FROM transfers").fetchone()
        return int(row["n"]) if row else 0


class CheckpointResolver:
    def __init__(self, source: LedgerSource, tolerance_sec: int = TIMESTAMP_TOLERANCE_SEC):
        self.source = source
        self.tolerance_sec = tolerance_sec
        self.block_cache: Dict[int, Optional[Checkpoint]] = {}

    async def _checkpoint(self, block_number: int) -> Optional[Checkpoint]:
        if block_number in self.block_cache:
            return self.block_cache[block_number]
        checkpoint = await self.source.checkpoint_at(block_number)
        if checkpoint is not None:
            self.block_cache[block_number] = checkpoint
        return checkpoint

    async def resolve(self, target_ts: int) -> Optional[Checkpoint]:
        low = 0
        high = await self.source.current_height()
        while low <= high:
            mid = (low + high) // 2
            checkpoint = await self._checkpoint(mid)
            if checkpoint is None:
                log.error("block_not_found", block=mid, target_ts=target_ts)
                return None

            if abs(checkpoint.timestamp - target_ts) <= self.tolerance_sec:
                return checkpoint
            if checkpoint.timestamp < target_ts:
                low = mid + 1
            else:
                high = mid - 1
        return None


@dataclass
class IngestionReport:
    target_block: int
    start_block: int
    skipped: bool = False
    windows: int = 0
    events_fetched: int = 0
    events_inserted: int = 0
    retries: int = 0
    chunk_size: int = 0
    elapsed_ms: int = 0


class IngestionEngine:
    def __init__(
        self,
        source: LedgerSource,
        store: EventStore,
        genesis_block: int,
        initial_chunk_size: int = INITIAL_CHUNK_SIZE,
        min_chunk_size: int = MIN_CHUNK_SIZE,
        max_chunk_size: int = MAX_CHUNK_SIZE,
        max_logs_per_query: int = MAX_LOGS_PER_QUERY,
        min_logs_to_increase_chunk: int = MIN_LOGS_TO_INCREASE_CHUNK,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        if min_chunk_size <= 0 or max_chunk_size < min_chunk_size:
            raise ValueError("chunk size bounds are invalid")
        self.source = source
        self.store = store
        self.genesis_block = genesis_block
        self.min_chunk_size = min_chunk_size
        self.max_chunk_size = max_chunk_size
        self.max_logs_per_query = max_logs_per_query
        self.min_logs_to_increase_chunk = min_logs_to_increase_chunk
        self.retry_policy = retry_policy or RetryPolicy(delay_sec=WINDOW_RETRY_DELAY_SEC)
        self.chunk_size = self._clamp(initial_chunk_size)

    def _clamp(self, size: int) -> int:
        return max(self.min_chunk_size, min(self.max_chunk_size, int(size)))

    def adjust_chunk_size(self, received: int) -> int:
        if received >= self.max_logs_per_query:
            self.chunk_size = self._clamp(self.chunk_size * 0.75)
        elif received < self.min_logs_to_increase_chunk:
            self.chunk_size = self._clamp(self.chunk_size * 1.25)
        elif received == 0:
            self.chunk_size = self._clamp(self.chunk_size * 2)
        return self.chunk_size

    def shrink_after_result_limit(self) -> int:
        self.chunk_size = self._clamp(self.chunk_size * 0.5)
        return self.chunk_size

    async def ingest_up_to(self, target_block: int) -> IngestionReport:
        highest_cached = self.store.highest_block()
        start_block = max(self.genesis_block, highest_cached + 1)
        report = IngestionReport(target_block=target_block, start_block=start_block)
        if highest_cached >= target_block:
            log.info(
                "ingestion_skipped",
                highest_cached=highest_cached,
                target_block=target_block,
            )
            report.skipped = True
            report.chunk_size = self.chunk_size
            return report

        if highest_cached >= self.genesis_block:
            log.info("ingestion_resuming", highest_cached=highest_cached, start_block=start_block)

        started = time.monotonic()
        current = start_block
        attempt = 0
        while current <= target_block:
            to_block = min(current + self.chunk_size - 1, target_block)
            try:
                events = await self.source.transfer_events_in_range(current, to_block)
            except QueryResultLimitError as e:
                attempt += 1
                report.retries += 1
                previous = self.chunk_size
                self.shrink_after_result_limit()
                log.warning(
                    "window_result_limit",
                    from_block=current,
                    to_block=to_block,
                    chunk_size=previous,
                    next_chunk_size=self.chunk_size,
                    error=str(e),
                )
                if self.retry_policy.exhausted(attempt):
                    raise
                await asyncio.sleep(self.retry_policy.delay_for(attempt))
                continue
            except Exception as e:
                attempt += 1
                report.retries += 1
                log.warning(
                    "window_fetch_failed",
                    from_block=current,
                    to_block=to_block,
                    attempt=attempt,
                    error=str(e),
                )
                if self.retry_policy.exhausted(attempt):
                    raise
                await asyncio.sleep(self.retry_policy.delay_for(attempt))
                continue

            inserted = self.store.bulk_insert(events)
            attempt = 0
            report.windows += 1
            report.events_fetched += len(events)
            report.events_inserted += inserted

            previous = self.chunk_size
            self.adjust_chunk_size(len(events))
            log.info(
                "window_ingested",
                from_block=current,
                to_block=to_block,
                received=len(events),
                inserted=inserted,
                chunk_size=self.chunk_size,
            )
            if self.chunk_size != previous:
                log.debug("chunk_size_changed", old=previous, new=self.chunk_size)
            current = to_block + 1

        report.chunk_size = self.chunk_size
        report.elapsed_ms = int((time.monotonic() - started) * 1000)
        log.info(
            "ingestion_finished",
            target_block=target_block,
            windows=report.windows,
            events_inserted=report.events_inserted,
            retries=report.retries,
            elapsed_ms=report.elapsed_ms,
        )
        return report


def replay_transfers(events: Iterable[TransferEvent]) -> Dict[str, str]:
    """Fold ordered transfers into token_id -> current owner. Burns drop the token."""
    holders: Dict[str, str] = {}
    for event in events:
        if event.to_addr.lower() == ZERO_ADDRESS:
            holders.pop(event.token_id, None)
        else:
            holders[event.token_id] = event.to_addr
    return holders


def unique_owners(holders: Dict[str, str]) -> List[str]:
    return list(dict.fromkeys(holders.values()))


class LedgerReducer:
    def __init__(self, store: EventStore):
        self.store = store

    def build_ledger(self, from_block: int, to_block: int) -> Dict[str, str]:
        events = self.store.events_in_range(from_block, to_block)
        holders = replay_transfers(events)
        log.info(
            "ledger_built",
            from_block=from_block,
            to_block=to_block,
            events=len(events),
            tokens=len(holders),
        )
        return holders


@dataclass
class BalanceTotal:
    total_wei: int
    owners: int
    completed: int

    @property
    def ether(self) -> str:
        return wei_to_ether_str(self.total_wei)


class BalanceAggregator:
    def __init__(
        self,
        source: LedgerSource,
        rate_limiter: RateLimiter,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.source = source
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy or RetryPolicy(delay_sec=BALANCE_RETRY_DELAY_SEC)

    async def fetch_balance(self, address: str, block_number: int) -> int:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.source.balance_of(address, block_number)
            except Exception as e:
                if self.retry_policy.exhausted(attempt):
                    log.error(
                        "balance_fetch_exhausted",
                        address=address,
                        block=block_number,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise BalanceFetchError(address, block_number, attempt) from e
                delay = self.retry_policy.delay_for(attempt)
                log.warning(
                    "balance_fetch_failed",
                    address=address,
                    block=block_number,
                    attempt=attempt,
                    retry_in_sec=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

    async def sum_balances(self, owners: Sequence[str], block_number: int) -> BalanceTotal:
        total_owners = len(owners)
        update_interval = max(1, total_owners // 100)
        completed = 0

        def make_task(address: str) -> Task:
            async def task() -> int:
                nonlocal completed
                balance = await self.fetch_balance(address, block_number)
                completed += 1
                if completed % update_interval == 0 or completed == total_owners:
                    log.info(
                        "balance_progress",
                        completed=completed,
                        total=total_owners,
                        pct=round(completed / total_owners * 100, 1),
                    )
                return balance

            return task

        futures = [self.rate_limiter.add(make_task(address)) for address in owners]
        try:
            balances = await asyncio.gather(*futures)
        except (Exception, asyncio.CancelledError):
            for f in futures:
                f.cancel()
            raise

        total = 0
        for balance in balances:
            total += int(balance)
        return BalanceTotal(total_wei=total, owners=total_owners, completed=completed)


@dataclass
class SnapshotResult:
    checkpoint: Checkpoint
    ingestion: IngestionReport
    tokens: int
    total: BalanceTotal
    owners: List[str] = field(default_factory=list)


class HolderSnapshot:
    def __init__(self, cfg: AppConfig, source: Optional[LedgerSource] = None):
        self.cfg = cfg
        self.storage = EventStore(cfg.sqlite_path)
        self.rpc_clients: List[RPCClient] = []
        if source is None:
            http_rpc = RPCClient(
                cfg.http_rpc_url,
                max_retries=cfg.max_rpc_retries,
                timeout_sec=cfg.rpc_timeout_sec,
            )
            self.rpc_clients.append(http_rpc)
            balance_rpc = http_rpc
            if cfg.balance_rpc_url and cfg.balance_rpc_url != cfg.http_rpc_url:
                balance_rpc = RPCClient(
                    cfg.balance_rpc_url,
                    max_retries=cfg.max_rpc_retries,
                    timeout_sec=cfg.rpc_timeout_sec,
                )
                self.rpc_clients.append(balance_rpc)
            source = LedgerSource(http_rpc, cfg.contract_addr, balance_rpc=balance_rpc)
        self.source = source
        self.rate_limiter = RateLimiter(cfg.requests_per_second)
        self.resolver = CheckpointResolver(self.source, tolerance_sec=cfg.timestamp_tolerance_sec)
        self.ingestion = IngestionEngine(
            self.source,
            self.storage,
            genesis_block=cfg.genesis_block,
            initial_chunk_size=cfg.initial_chunk_blocks,
            min_chunk_size=cfg.min_chunk_blocks,
            max_chunk_size=cfg.max_chunk_blocks,
            max_logs_per_query=cfg.max_logs_per_query,
            min_logs_to_increase_chunk=cfg.min_logs_to_increase_chunk,
            retry_policy=cfg.window_retry_policy(),
        )
        self.reducer = LedgerReducer(self.storage)
        self.aggregator = BalanceAggregator(
            self.source,
            self.rate_limiter,
            retry_policy=cfg.balance_retry_policy(),
        )

    async def __aenter__(self) -> "HolderSnapshot":
        for client in self.rpc_clients:
            await client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        for client in self.rpc_clients:
            await client.__aexit__(exc_type, exc, tb)
        self.storage.close()

    async def run(self, target_ts: int) -> SnapshotResult:
        checkpoint = await self.resolver.resolve(target_ts)
        if checkpoint is None:
            raise ResolutionError(target_ts, self.cfg.timestamp_tolerance_sec)
        log.info("checkpoint_resolved", block=checkpoint.number, timestamp=checkpoint.timestamp)

        report = await self.ingestion.ingest_up_to(checkpoint.number)
        holders = self.reducer.build_ledger(self.cfg.genesis_block, checkpoint.number)
        owners = unique_owners(holders)
        log.info("owners_collected", tokens=len(holders), owners=len(owners))

        total = await self.aggregator.sum_balances(owners, checkpoint.number)
        log.info(
            "snapshot_complete",
            block=checkpoint.number,
            owners=total.owners,
            total_ether=total.ether,
        )
        return SnapshotResult(
            checkpoint=checkpoint,
            ingestion=report,
            tokens=len(holders),
            total=total,
            owners=owners,
        )


async def main_async(cfg: AppConfig, target_ts: int) -> SnapshotResult:
    async with HolderSnapshot(cfg) as snapshot:
        return await snapshot.run(target_ts)


def parse_timestamp(value: str) -> int:
    stripped = value.strip()
    if not stripped.isdigit():
        raise argparse.ArgumentTypeError(f"timestamp must be a non-negative integer: {value!r}")
    return int(stripped)


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description=(
            "Rebuild the holder ledger of an ERC-721 collection at a point in time "
            "and print the holders' total native balance in ether"
        )
    )
    parser.add_argument("timestamp", type=parse_timestamp, help="target unix timestamp (seconds)")
    args = parser.parse_args(argv)

    config_path = os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)
    try:
        cfg = load_config(config_path)
    except ValueError as e:
        raise SystemExit(f"config error: {e}") from e
    setup_logging(cfg.log_level, cfg.log_json)

    try:
        result = asyncio.run(main_async(cfg, args.timestamp))
    except KeyboardInterrupt:
        return
    except (SnapshotError, sqlite3.Error, aiohttp.ClientError, asyncio.TimeoutError) as e:
        log.error("snapshot_failed", error=str(e), error_type=type(e).__name__)
        raise SystemExit(f"snapshot failed: {e}") from e

    print(result.total.ether)


if __name__ == "__main__":
    main()
