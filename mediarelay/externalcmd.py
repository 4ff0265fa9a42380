"""Launching external commands, optionally restarting them when they exit."""

from __future__ import annotations

import os
import shlex
import signal
import subprocess
import sys
import threading
from typing import Callable, Mapping

RESTART_PAUSE = 5.0

_IS_WINDOWS = sys.platform == "win32"


class _Terminated(Exception):
    pass


def expand_variables(cmdstr: str, env: Mapping[str, str]) -> str:
    """Replace every $NAME in the command with its value from env.

    Done on every platform so that the same command works everywhere.
    """
    for key, val in env.items():
        cmdstr = cmdstr.replace("$" + key, val)
    return cmdstr


class Pool:
    """A set of external commands whose run loops can be awaited together."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._running = 0

    def _acquire(self) -> None:
        with self._cond:
            self._running += 1

    def _release(self) -> None:
        with self._cond:
            self._running -= 1
            self._cond.notify_all()

    def close(self) -> None:
        """Wait for every command of the pool to finish."""
        with self._cond:
            self._cond.wait_for(lambda: self._running == 0)


class Cmd:
    """An external command run in the background.

    on_exit is called with an exception each time the command stops on its own.
    """

    def __init__(
        self,
        pool: Pool,
        cmdstr: str,
        restart: bool,
        env: Mapping[str, str],
        on_exit: Callable[[Exception], None],
    ) -> None:
        self._pool = pool
        self._cmdstr = expand_variables(cmdstr, env)
        self._restart = restart
        self._env = dict(env)
        self._on_exit = on_exit

        self._cond = threading.Condition()
        self._terminated = False

        pool._acquire()
        threading.Thread(target=self._run, daemon=True).start()

    def close(self) -> None:
        """Ask the command to stop; does not wait for it to exit."""
        with self._cond:
            self._terminated = True
            self._cond.notify_all()

    def _run(self) -> None:
        try:
            while True:
                try:
                    self._run_once()
                except _Terminated:
                    return
                except Exception as err:  # noqa: BLE001 - reported to the owner
                    self._on_exit(err)

                with self._cond:
                    if not self._restart:
                        self._cond.wait_for(lambda: self._terminated)
                        return
                    if self._cond.wait_for(lambda: self._terminated, RESTART_PAUSE):
                        return
        finally:
            self._pool._release()

    def _popen_args(self) -> tuple[object, dict]:
        if _IS_WINDOWS and (
            self._cmdstr.startswith("cmd ") or self._cmdstr.startswith("cmd.exe ")
        ):
            # cmd.exe does its own unquoting: hand it the raw command line.
            args = self._cmdstr
            for prefix in ("cmd ", "cmd.exe "):
                if args.startswith(prefix):
                    args = args[len(prefix):]
            return args, {"executable": "cmd.exe"}

        parts = shlex.split(self._cmdstr)
        if not parts:
            raise ValueError("empty command")
        return parts, {}

    def _run_once(self) -> None:
        args, extra = self._popen_args()
        proc = subprocess.Popen(args, env={**os.environ, **self._env}, **extra)

        exited: list[int] = []

        def wait_exit() -> None:
            code = proc.wait()
            with self._cond:
                exited.append(code)
                self._cond.notify_all()

        threading.Thread(target=wait_exit, daemon=True).start()

        with self._cond:
            self._cond.wait_for(lambda: self._terminated or exited)

            if self._terminated:
                if not exited:
                    try:
                        if _IS_WINDOWS:
                            proc.kill()
                        else:
                            proc.send_signal(signal.SIGINT)
                    except OSError:
                        pass
                    self._cond.wait_for(lambda: exited)
                raise _Terminated()

            code = exited[0]

        if code < 0:
            code = -1
        raise RuntimeError(f"command returned code {code}")