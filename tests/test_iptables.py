import subprocess

import pytest

from kubenetpol.iptables import Iptables, IptablesError

BUILTIN = ("INPUT", "FORWARD", "OUTPUT")


class FakeIptables:
    """Small in-memory emulation of iptables' filter table."""

    def __init__(self):
        self.chains = {name: [] for name in BUILTIN}
        self.calls = []
        self.save_output = ""

    def _result(self, argv, code=0, out=""):
        return subprocess.CompletedProcess(argv, code, out, "" if code == 0 else "failure")

    def _lines(self, chain):
        head = f"-P {chain} ACCEPT" if chain in BUILTIN else f"-N {chain}"
        return [head], [f"-A {chain} " + " ".join(rule) for rule in self.chains[chain]]

    def __call__(self, argv, input_text):
        self.calls.append((list(argv), input_text))
        program = argv[0]
        if program.endswith("-save"):
            return self._result(argv, out=self.save_output)
        if program.endswith("-restore"):
            return self._result(argv)
        args = [a for a in argv[1:] if a != "--wait"]
        assert args[0] == "-t"
        op, rest = args[2], args[3:]
        if op == "-n":
            op, rest = rest[0], rest[1:]
        if op == "-S" and not rest:
            heads, rules = [], []
            for chain in self.chains:
                h, r = self._lines(chain)
                heads += h
                rules += r
            return self._result(argv, out="\n".join(heads + rules) + "\n")
        chain = rest[0]
        if op == "-N":
            if chain in self.chains:
                return self._result(argv, 1)
            self.chains[chain] = []
            return self._result(argv)
        if chain not in self.chains:
            return self._result(argv, 1)
        rules = self.chains[chain]
        if op == "-L":
            return self._result(argv)
        if op == "-S":
            h, r = self._lines(chain)
            return self._result(argv, out="\n".join(h + r) + "\n")
        if op == "-C":
            return self._result(argv, 0 if rest[1:] in rules else 1)
        if op == "-A":
            rules.append(rest[1:])
            return self._result(argv)
        if op == "-I":
            rules.insert(int(rest[1]) - 1, rest[2:])
            return self._result(argv)
        if op == "-D":
            spec = rest[1:]
            if len(spec) == 1 and spec[0].isdigit():
                del rules[int(spec[0]) - 1]
            elif spec in rules:
                rules.remove(spec)
            else:
                return self._result(argv, 1)
            return self._result(argv)
        return self._result(argv, 2)


class FailingRestore:
    """Records what restore was fed and reports a failure status."""

    def __init__(self, status):
        self.status = status
        self.calls = []

    def __call__(self, argv, input_text):
        self.calls.append((list(argv), input_text))
        return subprocess.CompletedProcess(argv, self.status, "", "restore failed")


@pytest.fixture
def fake():
    return FakeIptables()


@pytest.fixture
def ipt(fake):
    return Iptables(runner=fake)


RULE = ["-m", "comment", "--comment", "kube-router netpol", "-j", "KUBE-ROUTER-INPUT"]


def test_new_chain_then_exists(ipt):
    assert not ipt.chain_exists("filter", "KUBE-ROUTER-INPUT")
    ipt.new_chain("filter", "KUBE-ROUTER-INPUT")
    assert ipt.chain_exists("filter", "KUBE-ROUTER-INPUT")


def test_new_chain_twice_fails(ipt):
    ipt.new_chain("filter", "KUBE-NWPLCY-DEFAULT")
    with pytest.raises(IptablesError) as info:
        ipt.new_chain("filter", "KUBE-NWPLCY-DEFAULT")
    assert info.value.exit_status == 1


def test_list_chains_builtin_first(ipt):
    ipt.new_chain("filter", "KUBE-ROUTER-INPUT")
    ipt.append_unique("filter", "INPUT", *RULE)
    assert ipt.list_chains("filter") == ["INPUT", "FORWARD", "OUTPUT", "KUBE-ROUTER-INPUT"]


def test_append_unique_adds_once(ipt):
    ipt.append_unique("filter", "INPUT", *RULE)
    ipt.append_unique("filter", "INPUT", *RULE)
    rules = [line for line in ipt.list("filter", "INPUT") if line.startswith("-A")]
    assert len(rules) == 1
    assert ipt.exists("filter", "INPUT", *RULE)


def test_insert_places_rule_at_position(ipt):
    ipt.append_unique("filter", "INPUT", "-j", "RETURN")
    ipt.insert("filter", "INPUT", 1, *RULE)
    rules = [line for line in ipt.list("filter", "INPUT") if line.startswith("-A")]
    assert rules[0].endswith("KUBE-ROUTER-INPUT")
    assert rules[1].endswith("RETURN")


def test_delete_by_spec_and_number(ipt):
    ipt.append_unique("filter", "OUTPUT", *RULE)
    ipt.append_unique("filter", "OUTPUT", "-j", "RETURN")
    ipt.delete("filter", "OUTPUT", *RULE)
    assert not ipt.exists("filter", "OUTPUT", *RULE)
    ipt.delete("filter", "OUTPUT", "1")
    assert not ipt.exists("filter", "OUTPUT", "-j", "RETURN")


def test_delete_missing_rule_raises(ipt):
    with pytest.raises(IptablesError) as info:
        ipt.delete("filter", "INPUT", *RULE)
    assert info.value.exit_status == 1


def test_exists_propagates_other_failures():
    def runner(argv, input_text):
        return subprocess.CompletedProcess(argv, 4, "", "resource problem")

    with pytest.raises(IptablesError) as info:
        Iptables(runner=runner).exists("filter", "INPUT", *RULE)
    assert info.value.exit_status == 4


def test_missing_binary_raises():
    def runner(argv, input_text):
        raise FileNotFoundError(argv[0])

    with pytest.raises(IptablesError) as info:
        Iptables(runner=runner).list_chains("filter")
    assert info.value.exit_status is None


def test_save_returns_dump(fake, ipt):
    fake.save_output = "*filter\n:INPUT ACCEPT [0:0]\nCOMMIT\n"
    assert ipt.save("filter") == fake.save_output
    argv, _ = fake.calls[-1]
    assert argv[0] == "iptables-save"
    assert "filter" in argv


def test_restore_feeds_data():
    runner = FailingRestore(3)
    data = "*filter\n:KUBE-ROUTER-INPUT - [0:0]\nCOMMIT\n"
    with pytest.raises(IptablesError) as info:
        Iptables(runner=runner).restore("filter", data)
    assert info.value.exit_status == 3
    argv, input_text = runner.calls[-1]
    assert argv[0] == "iptables-restore"
    assert input_text == data


def test_restore_accepts_bytes():
    runner = FailingRestore(2)
    data = "*filter\nCOMMIT\n"
    with pytest.raises(IptablesError) as info:
        Iptables(runner=runner).restore("filter", data.encode())
    assert info.value.exit_status == 2
    assert runner.calls[-1][1] == data