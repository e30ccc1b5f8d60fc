from logging import Logger
from pydantic import BaseModel
from typing import TypeVar, Callable, AsyncGenerator, Generic
import abc
import asyncio
import signal
import sys
import traceback

from .logger import init_logger

# Request type served by this server.
Request = TypeVar("Request", bound=BaseModel)


# stdin_jsonl parses newline-delimited JSON instances of `cls` from stdin and yields them.
async def stdin_jsonl(cls: type[Request]) -> AsyncGenerator[Request, None]:
    loop = asyncio.get_event_loop()
    reader = asyncio.StreamReader(limit=1 << 27)  # 128 MiB.
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)

    while line := await reader.readline():
        if not line.strip():
            continue
        request = cls.model_validate_json(line)
        yield request


# A Mixin is a supporting class which implements a utility on behalf of its owner.
# It's entered before the owner is used, and exited once the owner is done.
class Mixin(abc.ABC):
    async def _mixin_enter(self, log: Logger): ...
    async def _mixin_exit(self, log: Logger): ...


# BaseServer from which request-serving processes inherit.
class BaseServer(Generic[Request], abc.ABC):

    # request_class() returns the concrete class instance for Request served
    # by this server. It's required to implement to enable parsing of
    # Requests prior to their being dispatched.
    @classmethod
    @abc.abstractmethod
    def request_class(cls) -> type[Request]:
        raise NotImplementedError()

    @abc.abstractmethod
    async def handle(self, log: Logger, request: Request) -> None:
        raise NotImplementedError()

    # Serve by invoking `handle()` for all incoming instances of Request as
    # a concurrent asyncio.Task. When incoming `requests` are exhausted, all
    # pending tasks are awaited before returning.
    # All handler exceptions are caught and logged, and serve() raises
    # SystemExit(1) if any occurred.
    async def serve(
        self,
        log: Logger | None = None,
        requests: Callable[
            [type[Request]], AsyncGenerator[Request, None]
        ] = stdin_jsonl,
    ):
        if not log:
            log = init_logger()

        assert isinstance(log, Logger)  # Narrow type to non-None.

        loop = asyncio.get_running_loop()
        this_task = asyncio.current_task(loop)
        original_sigquit = signal.getsignal(signal.SIGQUIT)

        def dump_all_tasks(signum, frame):
            for task in asyncio.all_tasks(loop):
                if task is this_task:
                    continue
                log.warning(
                    "task dump",
                    {"task": task.get_name(), "stack": [str(f) for f in task.get_stack()]},
                )

        signal.signal(signal.SIGQUIT, dump_all_tasks)

        failed = False
        try:
            async with asyncio.TaskGroup() as group:
                async for request in requests(self.request_class()):
                    group.create_task(self.handle(log, request))

        except ExceptionGroup as exc_group:
            for exc in exc_group.exceptions:
                log.error("".join(traceback.format_exception(exc)))
                failed = True

        finally:
            # Restore the original signal handler
            signal.signal(signal.SIGQUIT, original_sigquit)

        if failed:
            raise SystemExit(1)
