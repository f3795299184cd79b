#!/usr/bin/env python3
"""
DASH Experiment Client

Emulates a DASH video player to measure network performance:

    negotiate -> download x N (rate adapts to measured throughput) -> collect

The first segment is requested at 3000 kbit/s. Each following segment is
sized from the throughput measured on the previous one:

    rate_kbps = int(received / elapsed * 8 / 1000)
    nbytes    = (rate_kbps * 1000 * elapsed_target) >> 3

There is no retry or backoff: any failure ends the run. Results already
produced stay valid and are delivered before the failure is reported.

Usage:
  python dash_client.py -y --hostname dash.example.org --scheme http
  python dash_client.py -y --timeout 30 --output results.parquet
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import aiohttp
import polars as pl
from tqdm import tqdm

from dash_log import setup_logger
from dash_model import (
    AUTHORIZATION_HEADER,
    COLLECT_PATH,
    DOWNLOAD_PATH,
    NEGOTIATE_PATH,
    SEGMENT_DURATION_SEC,
    ClientResults,
    NegotiateRequest,
    NegotiateResponse,
    ProtocolError,
    ServerResults,
    decode_server_results,
    dumps_records,
    loads_json,
)


logger = logging.getLogger(__name__)

LIBRARY_NAME = "neubot-dash"
LIBRARY_VERSION = "0.4.3"

CLIENT_NAME = "dash-client-py"
CLIENT_VERSION = LIBRARY_VERSION

# Identifies this implementation in collected data. 0.007xxxyyy is
# Measurement Kit; lower values are Neubot.
MAGIC_VERSION = "0.008000000"

# Minimum speed recommended by Netflix for SD quality in 2017.
INITIAL_RATE_KBPS = 3000

DEFAULT_NUM_ITERATIONS = 15
DEFAULT_TIMEOUT_SEC = 55.0
DEFAULT_LOCATE_URL = "https://locate.measurementlab.net/v2/nearest/neubot/dash"

PRIVACY_URL = "https://github.com/neubot/dash/blob/master/PRIVACY.md"


# =============================================================================
# ERRORS
# =============================================================================

class DashError(Exception):
    """Base class for DASH protocol failures."""


class HTTPRequestFailed(DashError):
    """The server answered with a status other than 200."""

    def __init__(self, status: int):
        super().__init__(f"HTTP request failed: status {status}")
        self.status = status


class ServerBusy(DashError):
    """The server did not unchoke us; try again later."""

    def __init__(self):
        super().__init__("server busy; try again later")


class NoServerAvailable(DashError):
    """The locate service returned no candidate servers."""


# =============================================================================
# RATE ADAPTATION
# =============================================================================

def make_user_agent(client_name: str, client_version: str) -> str:
    return f"{client_name}/{client_version} {LIBRARY_NAME}/{LIBRARY_VERSION}"


def segment_bytes(rate_kbps: int, elapsed_target: int) -> int:
    """Bytes needed to play elapsed_target seconds at rate_kbps."""
    return (rate_kbps * 1000 * elapsed_target) >> 3


def next_rate(received: int, elapsed: float) -> int:
    """
    Rate in kbit/s for the next segment given the last measurement.

    elapsed == 0 raises ZeroDivisionError, which ends the run.
    """
    speed = received / elapsed
    speed *= 8.0     # bit/s
    speed /= 1000.0  # kbit/s
    return int(speed)


# =============================================================================
# SERVER DISCOVERY
# =============================================================================

async def locate(session: aiohttp.ClientSession, locate_url: str, user_agent: str) -> list[str]:
    """
    Query the locate service and return candidate server hostnames.

    Raises:
        HTTPRequestFailed: If the locate service does not return 200
        ProtocolError: If the response has no results array
    """
    logger.debug("dash: GET %s", locate_url)
    async with session.get(locate_url, headers={"User-Agent": user_agent}) as resp:
        logger.debug("dash: StatusCode: %d", resp.status)
        if resp.status != 200:
            raise HTTPRequestFailed(resp.status)
        data = loads_json(await resp.read())

    results = data.get("results") if isinstance(data, dict) else None
    if not isinstance(results, list):
        raise ProtocolError("locate: response has no results array")
    return [r["machine"] for r in results if isinstance(r, dict) and r.get("machine")]


# =============================================================================
# RESULT STREAM
# =============================================================================

@dataclass(frozen=True)
class _Completion:
    error: Optional[BaseException]


class ResultStream:
    """
    Async iterator over per-iteration ClientResults of a single run.

    Finite and not restartable. The terminal error, if any, is part of the
    stream completion and is readable through `error` once exhausted.
    """

    def __init__(self, queue: asyncio.Queue, task: asyncio.Task):
        self._queue = queue
        self._task = task
        self._done = False
        self._error: Optional[BaseException] = None

    def __aiter__(self) -> "ResultStream":
        return self

    async def __anext__(self) -> ClientResults:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if isinstance(item, _Completion):
            self._done = True
            self._error = item.error
            raise StopAsyncIteration
        return item

    @property
    def done(self) -> bool:
        return self._done

    @property
    def error(self) -> Optional[BaseException]:
        if not self._done:
            raise RuntimeError("result stream not exhausted yet")
        return self._error

    async def aclose(self) -> None:
        """Cancel the run (if still going) and drain the stream."""
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        while not self._done:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                # Cancelled before the run got a chance to start
                self._done = True
                self._error = asyncio.CancelledError()
                break
            if isinstance(item, _Completion):
                self._done = True
                self._error = item.error


# =============================================================================
# CLIENT
# =============================================================================

class Client:
    """
    DASH client. One instance runs one test.

    The locator, HTTP session and clock may be injected; by default the
    client discovers a server through the locate service and opens its
    own aiohttp session for the duration of the run.
    """

    def __init__(
        self,
        client_name: str,
        client_version: str,
        *,
        hostname: str = "",
        scheme: str = "https",
        locate_url: str = DEFAULT_LOCATE_URL,
        num_iterations: int = DEFAULT_NUM_ITERATIONS,
        session: Optional[aiohttp.ClientSession] = None,
        locator: Optional[Callable[[aiohttp.ClientSession], Awaitable[list[str]]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client_name = client_name
        self.client_version = client_version
        self.hostname = hostname
        self.scheme = scheme
        self.locate_url = locate_url
        self.num_iterations = num_iterations
        self.user_agent = make_user_agent(client_name, client_version)

        self._session = session
        self._owns_session = False
        self._locator = locator
        self._clock = clock
        self._begin = clock()

        self._client_results: list[ClientResults] = []
        self._server_results: list[ServerResults] = []
        self._error: Optional[BaseException] = None
        self._stream: Optional[ResultStream] = None

    # -- accessors ------------------------------------------------------------

    @property
    def client_results(self) -> list[ClientResults]:
        return list(self._client_results)

    @property
    def server_results(self) -> list[ServerResults]:
        """Server measurements; typically empty if the run failed."""
        return list(self._server_results)

    @property
    def error(self) -> Optional[BaseException]:
        """
        Terminal error of the run, or None.

        An error does not mean there is no data: results emitted before
        the failure remain valid.
        """
        return self._error

    # -- HTTP plumbing ----------------------------------------------------------

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._owns_session = False

    def _url(self, path: str) -> str:
        return f"{self.scheme}://{self.hostname}{path}"

    def _headers(self, authorization: str, json_body: bool = False) -> dict[str, str]:
        headers = {"User-Agent": self.user_agent, AUTHORIZATION_HEADER: authorization}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    # -- protocol phases --------------------------------------------------------

    async def negotiate(self) -> NegotiateResponse:
        """
        Obtain the authorization token for this test.

        Raises:
            HTTPRequestFailed: On a non-200 response
            ServerBusy: If the token is empty or we are not unchoked
        """
        body = json.dumps(NegotiateRequest().to_dict())
        logger.debug("dash: body: %s", body)
        url = self._url(NEGOTIATE_PATH)
        logger.debug("dash: POST %s", url)
        async with self._http().post(url, data=body, headers=self._headers("", json_body=True)) as resp:
            logger.debug("dash: StatusCode: %d", resp.status)
            if resp.status != 200:
                raise HTTPRequestFailed(resp.status)
            data = await resp.read()
        logger.debug("dash: body: %s", data)
        response = NegotiateResponse.from_dict(loads_json(data))
        if not response.authorization or not response.unchoked:
            raise ServerBusy()
        logger.debug("dash: authorization: %s", response.authorization)
        return response

    async def download(self, authorization: str, current: ClientResults) -> None:
        """
        Download one segment sized from current.rate and update current.

        Elapsed time covers sending the request and reading the whole body.
        HTTP header overhead is not included in the byte count.
        """
        nbytes = segment_bytes(current.rate, current.elapsed_target)
        url = self._url(f"{DOWNLOAD_PATH}{nbytes}")
        logger.debug("dash: GET %s", url)
        current.server_url = url
        saved_ticks = self._clock()
        received = 0
        async with self._http().get(url, headers=self._headers(authorization)) as resp:
            logger.debug("dash: StatusCode: %d", resp.status)
            if resp.status != 200:
                raise HTTPRequestFailed(resp.status)
            async for chunk in resp.content.iter_any():
                received += len(chunk)
        current.elapsed = self._clock() - saved_ticks
        current.received = received
        current.request_ticks = saved_ticks - self._begin
        current.timestamp = int(time.time())

    async def collect(self, authorization: str) -> None:
        """Send our measurements and retrieve the server's."""
        body = dumps_records(self._client_results)
        logger.debug("dash: body: %s", body)
        url = self._url(COLLECT_PATH)
        logger.debug("dash: POST %s", url)
        async with self._http().post(url, data=body, headers=self._headers(authorization, json_body=True)) as resp:
            logger.debug("dash: StatusCode: %d", resp.status)
            if resp.status != 200:
                raise HTTPRequestFailed(resp.status)
            data = await resp.read()
        logger.debug("dash: body: %s", data)
        self._server_results = decode_server_results(loads_json(data))

    async def _loop(self, queue: asyncio.Queue) -> None:
        # Queueing is no longer supported server side: a busy server is
        # reported as ServerBusy instead of waiting to be unchoked.
        negotiate_response = await self.negotiate()
        current = ClientResults(
            elapsed_target=SEGMENT_DURATION_SEC,
            platform=sys.platform,
            rate=INITIAL_RATE_KBPS,
            real_address=negotiate_response.real_address,
            version=MAGIC_VERSION,
        )
        while current.iteration < self.num_iterations:
            await self.download(negotiate_response.authorization, current)
            snapshot = dataclasses.replace(current)
            self._client_results.append(snapshot)
            queue.put_nowait(snapshot)
            current.iteration += 1
            current.rate = next_rate(current.received, current.elapsed)
        await self.collect(negotiate_response.authorization)

    async def _run(self, queue: asyncio.Queue, deadline: Optional[float]) -> None:
        try:
            await asyncio.wait_for(self._loop(queue), self._remaining(deadline))
        except asyncio.CancelledError as e:
            self._error = e
            raise
        except Exception as e:
            # Delivered to the consumer as the stream completion
            self._error = e
        finally:
            try:
                await self._close_session()
            finally:
                queue.put_nowait(_Completion(self._error))

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - asyncio.get_running_loop().time())

    async def _discover(self) -> str:
        if self._locator is not None:
            candidates = await self._locator(self._http())
        else:
            candidates = await locate(self._http(), self.locate_url, self.user_agent)
        if not candidates:
            raise NoServerAvailable("locate service returned no servers")
        return candidates[0]

    async def start_download(self, timeout: Optional[float] = None) -> ResultStream:
        """
        Resolve the server and start the test in the background.

        Fails fast, without starting the test, if discovery fails or the
        deadline has already passed. Otherwise returns a ResultStream that
        yields each iteration as soon as it completes.

        Args:
            timeout: Deadline in seconds for the whole run, discovery included
        """
        if self._stream is not None:
            raise RuntimeError("a Client runs a single test")
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        try:
            if not self.hostname:
                logger.debug("dash: discovering server with locate")
                self.hostname = await asyncio.wait_for(self._discover(), self._remaining(deadline))
            if deadline is not None and loop.time() >= deadline:
                raise asyncio.TimeoutError("deadline expired before starting the test")
        except BaseException:
            await self._close_session()
            raise
        logger.debug("dash: using server: %s", self.hostname)
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self._run(queue, deadline))
        self._stream = ResultStream(queue, task)
        return self._stream


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class ClientConfig:
    """DASH client configuration."""
    hostname: str = ""
    scheme: str = "https"
    timeout_sec: float = DEFAULT_TIMEOUT_SEC
    accept_privacy: bool = False

    locate_url: str = DEFAULT_LOCATE_URL
    num_iterations: int = DEFAULT_NUM_ITERATIONS

    output: Optional[str] = None
    verbose: bool = False


def parse_args(argv: Optional[list[str]] = None) -> ClientConfig:
    """Parse command line arguments or JSON config file."""
    p = argparse.ArgumentParser(
        description="DASH Experiment Client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
The -y flag states that you have read and accept the privacy policy at
{PRIVACY_URL}

Examples:
  python dash_client.py -y
  python dash_client.py -y --hostname 127.0.0.1:8080 --scheme http
  python dash_client.py -y --config client.json --output run.csv
"""
    )

    p.add_argument("--config", type=str, help="Path to JSON config file")
    p.add_argument("-y", dest="accept_privacy", action="store_true",
                   help="I have read and accept the privacy policy")
    p.add_argument("--hostname", type=str, default="",
                   help="Server hostname[:port]; discovered through locate if omitted")
    p.add_argument("--scheme", type=str, default="https", choices=["https", "http"])
    p.add_argument("--timeout", dest="timeout_sec", type=float, default=DEFAULT_TIMEOUT_SEC,
                   help="Seconds after which the whole test is aborted")
    p.add_argument("--locate_url", type=str, default=DEFAULT_LOCATE_URL)
    p.add_argument("--num_iterations", type=int, default=DEFAULT_NUM_ITERATIONS)
    p.add_argument("--output", type=str, default=None,
                   help="Export client results to a .csv or .parquet file")
    p.add_argument("--verbose", action="store_true")

    args = p.parse_args(argv)

    if args.config:
        with Path(args.config).open("r") as f:
            data = json.load(f)

        return ClientConfig(
            hostname=data.get("hostname", ""),
            scheme=data.get("scheme", "https"),
            timeout_sec=float(data.get("timeout", DEFAULT_TIMEOUT_SEC)),
            accept_privacy=args.accept_privacy or bool(data.get("y", False)),
            locate_url=data.get("locate_url", DEFAULT_LOCATE_URL),
            num_iterations=int(data.get("num_iterations", DEFAULT_NUM_ITERATIONS)),
            output=data.get("output"),
            verbose=bool(data.get("verbose", False)),
        )

    return ClientConfig(
        hostname=args.hostname,
        scheme=args.scheme,
        timeout_sec=args.timeout_sec,
        accept_privacy=args.accept_privacy,
        locate_url=args.locate_url,
        num_iterations=args.num_iterations,
        output=args.output,
        verbose=args.verbose,
    )


# =============================================================================
# RESULT EXPORT
# =============================================================================

def results_frame(results: list[ClientResults]) -> pl.DataFrame:
    """Per-iteration client results as a DataFrame, with throughput in kbit/s."""
    df = pl.DataFrame([r.to_dict() for r in results])
    return df.with_columns(
        (pl.col("received") * 8 / 1000 / pl.col("elapsed")).alias("throughput_kbps")
    )


def export_results(results: list[ClientResults], path: str) -> str:
    """Write client results to CSV or Parquet, chosen by file extension."""
    out = Path(path)
    df = results_frame(results)
    if out.suffix == ".parquet":
        df.write_parquet(out)
    elif out.suffix in (".csv", ".txt"):
        df.write_csv(out)
    else:
        raise ValueError(f"Unsupported output format: {out.suffix}")
    return str(out.resolve())


# =============================================================================
# MAIN
# =============================================================================

def describe_error(e: BaseException) -> str:
    """Error text for the fatal log line; timeouts carry no message."""
    return str(e) or type(e).__name__


def _print_privacy_notice() -> None:
    print("", file=sys.stderr)
    print(f"Please, read the privacy policy at {PRIVACY_URL}.", file=sys.stderr)
    print("", file=sys.stderr)
    print("If you accept the privacy policy, rerun adding the `-y` flag to the command line.",
          file=sys.stderr)
    print("", file=sys.stderr)


async def run(cfg: ClientConfig, on_result: Optional[Callable[[ClientResults], Any]] = None) -> Client:
    """
    Run one test, printing every result as a JSON line.

    Returns the client once the stream is exhausted; raises the run's
    terminal error after partial results have been printed.
    """
    client = Client(
        CLIENT_NAME,
        CLIENT_VERSION,
        hostname=cfg.hostname,
        scheme=cfg.scheme,
        locate_url=cfg.locate_url,
        num_iterations=cfg.num_iterations,
    )
    stream = await client.start_download(timeout=cfg.timeout_sec)
    print(f"[Client] Using server: {client.hostname}", file=sys.stderr)

    pbar = tqdm(total=cfg.num_iterations, desc="DASH", unit="seg", file=sys.stderr)
    try:
        async for result in stream:
            if on_result is not None:
                on_result(result)
            tqdm.write(json.dumps(result.to_dict()), file=sys.stdout)
            pbar.update(1)
    finally:
        pbar.close()

    if cfg.output and client.client_results:
        path = export_results(client.client_results, cfg.output)
        print(f"[Export] Client results: {path}", file=sys.stderr)

    if stream.error is not None:
        raise stream.error

    print(json.dumps([s.to_dict() for s in client.server_results]))
    return client


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    cfg = parse_args(argv)
    if not cfg.accept_privacy:
        _print_privacy_notice()
        return 1

    log = setup_logger(None, None, logging.DEBUG if cfg.verbose else logging.INFO)

    try:
        asyncio.run(run(cfg))
    except KeyboardInterrupt:
        print("\n[Shutdown] Interrupted.", file=sys.stderr)
        return 1
    except Exception as e:
        log.critical("DASH experiment failed: %s", describe_error(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
