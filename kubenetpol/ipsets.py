"""In-memory view of kernel ipsets, loaded with ``ipset save`` and written with ``ipset restore``."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence

TYPE_HASH_IP = "hash:ip"
TYPE_HASH_NET = "hash:net"
OPTION_TIMEOUT = "timeout"
OPTION_NO_MATCH = "nomatch"

Runner = Callable[[Sequence[str], Optional[str]], str]


def _run_ipset(args: Sequence[str], input_text: Optional[str] = None) -> str:
    try:
        result = subprocess.run(
            ["ipset", *args],
            input=input_text,
            capture_output=True,
            text=True,
            check=True,
        )
    except FileNotFoundError as exc:
        raise RuntimeError("Ipset utility not found") from exc
    except subprocess.CalledProcessError as exc:
        raise RuntimeError(
            f"ipset {' '.join(args)} failed: {(exc.stderr or '').strip()}"
        ) from exc
    return result.stdout


@dataclass
class IPSet:
    """One ipset: its type, creation options and entries (each a list of words)."""

    name: str
    set_type: str
    options: list[str] = field(default_factory=list)
    entries: list[list[str]] = field(default_factory=list)


def _default_options(entries: Sequence[Sequence[str]]) -> list[str]:
    family = "inet6" if any(":" in entry[0] for entry in entries if entry) else "inet"
    return ["family", family, OPTION_TIMEOUT, "0"]


class IPSetRegistry:
    """The ipsets of the host, edited in memory and applied in one restore."""

    def __init__(self, runner: Optional[Runner] = None) -> None:
        self._runner: Runner = runner if runner is not None else _run_ipset
        self.sets: dict[str, IPSet] = {}

    def save(self) -> None:
        """Replace the in-memory sets with the output of ``ipset save``."""
        sets: dict[str, IPSet] = {}
        for line in self._runner(["save"], None).splitlines():
            words = line.split()
            if len(words) < 3:
                continue
            command, name, rest = words[0], words[1], words[2:]
            if command == "create":
                sets[name] = IPSet(name, rest[0], rest[1:])
            elif command == "add" and name in sets:
                sets[name].entries.append(rest)
        self.sets = sets

    def refresh_set(
        self, name: str, entries: Iterable[Sequence[str]], set_type: str
    ) -> None:
        """Set the entries of ``name`` to ``entries``, creating the set if needed."""
        new_entries = [list(entry) for entry in entries]
        existing = self.sets.get(name)
        if existing is not None and existing.set_type == set_type:
            options = existing.options
        else:
            options = _default_options(new_entries)
        self.sets[name] = IPSet(name, set_type, list(options), new_entries)

    def render(self) -> str:
        """The ``ipset restore`` input that makes the kernel match the in-memory sets."""
        lines: list[str] = []
        for ipset in self.sets.values():
            lines.append(" ".join(["create", ipset.name, ipset.set_type, *ipset.options]))
            lines.append(f"flush {ipset.name}")
            lines.extend(" ".join(["add", ipset.name, *entry]) for entry in ipset.entries)
        return "".join(line + "\n" for line in lines)

    def restore(self) -> None:
        """Apply the in-memory sets with ``ipset restore -exist``."""
        self._runner(["restore", "-exist"], self.render())

    def destroy(self, name: str) -> None:
        """Destroy the set ``name`` on the host and forget it."""
        self._runner(["destroy", name], None)
        self.sets.pop(name, None)

    def names(self) -> list[str]:
        """Names of the known sets, in the order they were loaded or added."""
        return list(self.sets)