"""Thin wrapper over the iptables command line tools."""

from __future__ import annotations

import subprocess
from typing import Callable, Optional, Sequence

Runner = Callable[[Sequence[str], Optional[str]], "subprocess.CompletedProcess[str]"]


def _run(argv: Sequence[str], input_text: Optional[str]) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(
        list(argv), input=input_text, capture_output=True, text=True, check=False
    )


class IptablesError(Exception):
    """An iptables command failed; ``exit_status`` is None when it could not start."""

    def __init__(self, message: str, exit_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_status = exit_status


class Iptables:
    """Runs iptables, iptables-save and iptables-restore."""

    def __init__(self, command: str = "iptables", runner: Optional[Runner] = None) -> None:
        self.command = command
        self._runner: Runner = runner if runner is not None else _run

    def _execute(self, program: str, args: Sequence[str], input_text: Optional[str] = None) -> str:
        argv = [program, *args]
        try:
            result = self._runner(argv, input_text)
        except FileNotFoundError as exc:
            raise IptablesError(f"{program} not found") from exc
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise IptablesError(
                f"running {' '.join(argv)}: exit status {result.returncode}: {stderr}",
                result.returncode,
            )
        return result.stdout or ""

    def _iptables(self, table: str, *args: str) -> str:
        return self._execute(self.command, ["--wait", "-t", table, *args])

    def _succeeds(self, table: str, *args: str) -> bool:
        try:
            self._iptables(table, *args)
        except IptablesError as exc:
            if exc.exit_status == 1:
                return False
            raise
        return True

    def exists(self, table: str, chain: str, *args: str) -> bool:
        """True when the rule is present in ``chain``."""
        return self._succeeds(table, "-C", chain, *args)

    def insert(self, table: str, chain: str, position: int, *args: str) -> None:
        """Insert the rule at 1-based ``position``."""
        self._iptables(table, "-I", chain, str(position), *args)

    def append_unique(self, table: str, chain: str, *args: str) -> None:
        """Append the rule unless it is already present."""
        if not self.exists(table, chain, *args):
            self._iptables(table, "-A", chain, *args)

    def delete(self, table: str, chain: str, *args: str) -> None:
        """Delete a rule given by its spec or by its 1-based number."""
        self._iptables(table, "-D", chain, *args)

    def list(self, table: str, chain: str) -> list[str]:
        """The rules of ``chain`` in ``-S`` form, starting with its -P or -N line."""
        return [line for line in self._iptables(table, "-S", chain).splitlines() if line]

    def list_chains(self, table: str) -> list[str]:
        """Names of all chains of ``table``, builtin first."""
        chains = []
        for line in self._iptables(table, "-S").splitlines():
            if not (line.startswith("-P") or line.startswith("-N")):
                break
            chains.append(line.split()[1])
        return chains

    def chain_exists(self, table: str, chain: str) -> bool:
        """True when ``chain`` exists in ``table``."""
        return self._succeeds(table, "-n", "-L", chain)

    def new_chain(self, table: str, chain: str) -> None:
        """Create ``chain``; fails if it already exists."""
        self._iptables(table, "-N", chain)

    def save(self, table: str) -> str:
        """The ``iptables-save`` dump of ``table``."""
        return self._execute(f"{self.command}-save", ["-t", table])

    def restore(self, table: str, data: str) -> None:
        """Load ``data`` into ``table`` with ``iptables-restore``."""
        if isinstance(data, (bytes, bytearray)):
            data = data.decode()
        self._execute(f"{self.command}-restore", ["-T", table], data)