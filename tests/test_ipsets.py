import subprocess
from unittest import mock

import pytest

from kubenetpol.ipsets import (
    OPTION_NO_MATCH,
    OPTION_TIMEOUT,
    TYPE_HASH_IP,
    TYPE_HASH_NET,
    IPSet,
    IPSetRegistry,
)


class FakeRunner:
    def __init__(self, save_output=""):
        self.save_output = save_output
        self.calls = []

    def __call__(self, args, input_text):
        self.calls.append((list(args), input_text))
        if list(args) == ["save"]:
            return self.save_output
        return ""


SAVE_OUTPUT = (
    "create KUBE-SRC-AAAA hash:ip family inet hashsize 1024 maxelem 65536 timeout 0\n"
    "add KUBE-SRC-AAAA 10.0.0.1 timeout 0\n"
    "add KUBE-SRC-AAAA 10.0.0.2 timeout 0\n"
    "create OTHER hash:net family inet hashsize 1024 maxelem 65536\n"
)


def test_save_parses_sets_and_entries():
    registry = IPSetRegistry(FakeRunner(SAVE_OUTPUT))
    registry.save()
    assert registry.names() == ["KUBE-SRC-AAAA", "OTHER"]
    src = registry.sets["KUBE-SRC-AAAA"]
    assert src.set_type == TYPE_HASH_IP
    assert src.entries == [["10.0.0.1", "timeout", "0"], ["10.0.0.2", "timeout", "0"]]
    assert registry.sets["OTHER"].entries == []


def test_refresh_keeps_options_for_same_type():
    registry = IPSetRegistry(FakeRunner(SAVE_OUTPUT))
    registry.save()
    old_options = list(registry.sets["KUBE-SRC-AAAA"].options)
    registry.refresh_set("KUBE-SRC-AAAA", [["10.0.0.9", OPTION_TIMEOUT, "0"]], TYPE_HASH_IP)
    refreshed = registry.sets["KUBE-SRC-AAAA"]
    assert refreshed.options == old_options
    assert refreshed.entries == [["10.0.0.9", OPTION_TIMEOUT, "0"]]


def test_refresh_creates_new_set_with_timeout_option():
    registry = IPSetRegistry(FakeRunner())
    registry.refresh_set("KUBE-DST-BBBB", [["10.1.0.0/16", OPTION_TIMEOUT, "0"]], TYPE_HASH_NET)
    ipset = registry.sets["KUBE-DST-BBBB"]
    assert ipset.set_type == TYPE_HASH_NET
    assert OPTION_TIMEOUT in ipset.options
    assert registry.names() == ["KUBE-DST-BBBB"]


def test_refresh_detects_ipv6_family():
    registry = IPSetRegistry(FakeRunner())
    registry.refresh_set("V6", [["fd00::1", OPTION_TIMEOUT, "0"]], TYPE_HASH_IP)
    registry.refresh_set("V4", [["10.0.0.1", OPTION_TIMEOUT, "0"]], TYPE_HASH_IP)
    assert "inet6" in registry.sets["V6"].options
    assert "inet6" not in registry.sets["V4"].options


def test_render_contains_create_flush_and_adds():
    registry = IPSetRegistry(FakeRunner())
    registry.refresh_set(
        "S",
        [["0.0.0.0/1", OPTION_TIMEOUT, "0"], ["10.0.0.0/8", OPTION_TIMEOUT, "0", OPTION_NO_MATCH]],
        TYPE_HASH_NET,
    )
    lines = registry.render().splitlines()
    assert lines[0].startswith("create S hash:net ")
    assert lines[1] == "flush S"
    assert lines[2:] == ["add S 0.0.0.0/1 timeout 0", "add S 10.0.0.0/8 timeout 0 nomatch"]


def test_restore_sends_rendered_text():
    runner = FakeRunner()
    registry = IPSetRegistry(runner)
    registry.refresh_set("S", [["10.0.0.1", OPTION_TIMEOUT, "0"]], TYPE_HASH_IP)
    registry.restore()
    assert runner.calls == [(["restore", "-exist"], registry.render())]


def test_render_save_round_trip():
    first = IPSetRegistry(FakeRunner())
    first.refresh_set("A", [["10.0.0.1", OPTION_TIMEOUT, "0"]], TYPE_HASH_IP)
    first.refresh_set("B", [["10.2.0.0/16", OPTION_TIMEOUT, "0"]], TYPE_HASH_NET)
    first.refresh_set("C", [], TYPE_HASH_IP)
    second = IPSetRegistry(FakeRunner(first.render()))
    second.save()
    assert second.sets == first.sets


def test_destroy_runs_command_and_forgets_set():
    runner = FakeRunner(SAVE_OUTPUT)
    registry = IPSetRegistry(runner)
    registry.save()
    registry.destroy("OTHER")
    assert runner.calls[-1] == (["destroy", "OTHER"], None)
    assert registry.names() == ["KUBE-SRC-AAAA"]


def test_saved_set_compares_by_value():
    registry = IPSetRegistry(FakeRunner(SAVE_OUTPUT))
    registry.save()
    other = registry.sets["OTHER"]
    assert other == IPSet("OTHER", TYPE_HASH_NET, list(other.options), [])
    assert other != IPSet("OTHER", TYPE_HASH_NET, list(other.options), [["10.0.0.0/8"]])


def test_missing_binary_raises():
    registry = IPSetRegistry()
    with mock.patch("kubenetpol.ipsets.subprocess.run", side_effect=FileNotFoundError):
        with pytest.raises(RuntimeError, match="Ipset utility not found"):
            registry.save()


def test_failed_command_raises():
    registry = IPSetRegistry()
    error = subprocess.CalledProcessError(1, ["ipset", "destroy", "X"], stderr="in use")
    with mock.patch("kubenetpol.ipsets.subprocess.run", side_effect=error):
        with pytest.raises(RuntimeError, match="in use"):
            registry.destroy("X")