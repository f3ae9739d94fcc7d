"""
Tests for inventory parsing, group resolution and endpoint probing.
"""

import asyncio
from pathlib import Path

import pytest

from proviso.engine.errors import ConnectionError, InventoryError, UnknownGroupError, UnreachableHostError
from proviso.engine.inventory import Endpoint, InventoryManager, ProbePolicy, Reachability


class TestINIInventoryParser:
    """Test INI inventory file parsing."""

    def test_parse_groups_in_order(self, tmp_path: Path):
        inventory_file = tmp_path / "inventory.ini"
        inventory_file.write_text("""
[bastion]
bastion.lab ansible_host=192.168.123.100 ansible_user=root

[target]
master[1:3].lab
""")
        mgr = InventoryManager().parse(str(inventory_file))

        bastion = mgr.resolve("bastion")
        assert [e.name for e in bastion] == ["bastion.lab"]
        assert bastion[0].address == "192.168.123.100"
        assert bastion[0].user == "root"
        assert bastion[0].connection_type == "ssh"

        assert [e.name for e in mgr.resolve("target")] == ["master1.lab", "master2.lab", "master3.lab"]

    def test_group_vars_and_children(self):
        mgr = InventoryManager().parse_string("""
[all:vars]
ocp4_version=4.14

[masters]
m1

[workers]
w1

[cluster:children]
masters
workers

[cluster:vars]
cluster_name=lab
compact=false
""")
        assert [e.name for e in mgr.resolve("cluster")] == ["m1", "w1"]
        group_vars = mgr.get_group_vars("masters")
        assert group_vars["ocp4_version"] == 4.14
        assert group_vars["cluster_name"] == "lab"
        assert group_vars["compact"] is False

    def test_host_vars_merge(self):
        mgr = InventoryManager().parse_string("[web]\nweb1 http_port=8080\n[web:vars]\nhttp_port=80\nrole=web\n")
        host_vars = mgr.get_host_vars("web1")
        assert host_vars["http_port"] == 8080
        assert host_vars["role"] == "web"

    def test_unknown_section(self):
        with pytest.raises(InventoryError):
            InventoryManager().parse_string("[web:bogus]\nx\n")

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(InventoryError):
            InventoryManager().parse(tmp_path / "nope.ini")

    def test_group_vars_directory(self, tmp_path: Path):
        (tmp_path / "hosts").write_text("[bastion]\nb1\n")
        (tmp_path / "group_vars").mkdir()
        (tmp_path / "group_vars" / "bastion.yml").write_text("dns_domain: lab.local\n")
        mgr = InventoryManager().parse(tmp_path / "hosts")
        assert mgr.get_group_vars("bastion")["dns_domain"] == "lab.local"


class TestYAMLInventory:

    def test_yaml_groups(self):
        mgr = InventoryManager().parse_string("""
all:
  vars:
    domain: lab
  children:
    bastion:
      hosts:
        b1:
          ansible_host: 10.0.0.1
""", fmt="yaml")
        endpoints = mgr.resolve("bastion")
        assert endpoints[0].address == "10.0.0.1"
        assert mgr.get_group_vars("bastion")["domain"] == "lab"


class TestResolve:

    def test_unknown_group(self):
        with pytest.raises(UnknownGroupError) as exc_info:
            InventoryManager().parse_string("[web]\nw1\n").resolve("db")
        assert exc_info.value.group == "db"

    def test_empty_group(self):
        with pytest.raises(UnknownGroupError):
            InventoryManager().parse_string("[web]\n").resolve("web")

    def test_implicit_localhost(self):
        endpoints = InventoryManager().resolve("localhost")
        assert endpoints[0].name == "localhost"
        assert endpoints[0].connection_type == "local"

    def test_host_name_as_target(self):
        mgr = InventoryManager().parse_string("[web]\nw1\nw2\n")
        assert [e.name for e in mgr.resolve("w2")] == ["w2"]

    def test_hostvars_include_localhost(self):
        hostvars = InventoryManager().parse_string("[web]\nw1 a=1\n").hostvars()
        assert hostvars["w1"]["a"] == 1
        assert "localhost" in hostvars


class FakeConnection:

    def __init__(self, endpoint):
        self.endpoint = endpoint
        self.closed = False

    async def close(self):
        self.closed = True


class TestProbe:

    def test_policy_validation(self):
        with pytest.raises(ValueError):
            ProbePolicy(retries=0)
        with pytest.raises(ValueError):
            ProbePolicy(timeout=0)

    @pytest.mark.asyncio
    async def test_probe_success_is_cached(self):
        calls = []

        async def connect(endpoint):
            calls.append(endpoint.name)
            return FakeConnection(endpoint)

        endpoint = Endpoint("b1")
        policy = ProbePolicy(timeout=1, retries=2, delay=0)
        first = await endpoint.probe(connect, policy)
        second = await endpoint.probe(connect, policy)
        assert first is second
        assert calls == ["b1"]
        assert endpoint.state is Reachability.REACHABLE

        await endpoint.close()
        assert first.closed
        assert endpoint.connection is None

    @pytest.mark.asyncio
    async def test_probe_retries_then_gives_up(self):
        calls = []

        async def connect(endpoint):
            calls.append(1)
            raise ConnectionError(endpoint.name, "refused")

        endpoint = Endpoint("b1")
        with pytest.raises(UnreachableHostError) as exc_info:
            await endpoint.probe(connect, ProbePolicy(timeout=1, retries=3, delay=0))
        assert len(calls) == 3
        assert exc_info.value.attempts == 3
        assert endpoint.state is Reachability.UNREACHABLE

        # The outcome is remembered for the rest of the run
        with pytest.raises(UnreachableHostError):
            await endpoint.probe(connect, ProbePolicy(timeout=1, retries=3, delay=0))
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_probe_timeout(self):
        async def connect(endpoint):
            await asyncio.sleep(10)

        endpoint = Endpoint("slow")
        with pytest.raises(UnreachableHostError) as exc_info:
            await endpoint.probe(connect, ProbePolicy(timeout=0.01, retries=1, delay=0))
        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_concurrent_probes_connect_once(self):
        calls = []

        async def connect(endpoint):
            calls.append(1)
            await asyncio.sleep(0.01)
            return FakeConnection(endpoint)

        endpoint = Endpoint("shared")
        policy = ProbePolicy(timeout=1, retries=1, delay=0)
        results = await asyncio.gather(endpoint.probe(connect, policy), endpoint.probe(connect, policy))
        assert results[0] is results[1]
        assert calls == [1]
