"""Tests for isolation definitions, adapters, the registry and the manager."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
import yaml

from orchestra.config import IsolationConfig, MountConfig, ResourceLimits, user_dir
from orchestra.errors import (
    BackendUnavailableError,
    CommandError,
    DefinitionError,
    DefinitionNotFoundError,
    HandleNotFoundError,
    TierPolicyError,
)
from orchestra.isolation import (
    AdapterRegistry,
    ContainerAdapter,
    DefinitionLoader,
    IsolationManager,
    UnisolatedAdapter,
    build_default_registry,
)
from orchestra.isolation.container import parse_stats
from orchestra.isolation.definitions import size_to_mb
from orchestra.models import BackendHandle, IsolationTier


def _value_after(args: list[str], flag: str) -> str:
    return args[args.index(flag) + 1]


# -- Definitions ------------------------------------------------------------


class TestDefinitions:
    def test_defaults_from_isolation_config(self, tmp_path: Path):
        loader = DefinitionLoader(tmp_path, IsolationConfig(limits=ResourceLimits(memory="4g")))
        d = loader.container()
        assert d.image == "orchestra-agent:latest"
        assert d.memory == "4g"
        assert d.network == "none"

    def test_repo_definition_merges_config(self, tmp_path: Path):
        path = tmp_path / ".orchestra" / "isolation" / "dev.yaml"
        path.parent.mkdir(parents=True)
        path.write_text(yaml.dump({"image": "python:3.12", "memory": "8g", "environment": {"A": "1"}}))
        iso = IsolationConfig(
            environment={"B": "2"},
            mounts=[MountConfig(source="/srv/data", target="/data", mode="ro")],
        )

        d = DefinitionLoader(tmp_path, iso).container("repo:dev")
        assert d.name == "dev"
        assert d.image == "python:3.12"
        assert d.memory == "8g"
        assert d.environment == {"B": "2", "A": "1"}
        assert [m.target for m in d.mounts] == ["/data"]

    def test_bare_reference_falls_back_to_user(self, tmp_path: Path):
        path = user_dir() / "isolation" / "heavy.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"image": "big:1", "cpus": "8"}))

        d = DefinitionLoader(tmp_path).container("heavy")
        assert d.image == "big:1"
        assert d.cpus == "8"

    def test_missing_definition(self, tmp_path: Path):
        with pytest.raises(DefinitionNotFoundError):
            DefinitionLoader(tmp_path).container("repo:nope")

    def test_unknown_scope(self, tmp_path: Path):
        with pytest.raises(DefinitionError):
            DefinitionLoader(tmp_path).container("team:dev")

    def test_microvm_from_limits(self, tmp_path: Path):
        iso = IsolationConfig(
            limits=ResourceLimits(memory="2g", cpus="4"),
            mounts=[MountConfig(source="./cache", target="/cache", mode="rw")],
        )
        d = DefinitionLoader(tmp_path, iso).microvm()
        assert d.memory_mb == 2048
        assert d.vcpus == 4
        assert d.mounts[0].tag == "mount0"
        assert d.mounts[0].read_only is False

    @pytest.mark.parametrize(
        "size,mb", [("4g", 4096), ("512m", 512), ("1.5g", 1536), ("2048k", 2), ("100", 1)]
    )
    def test_size_to_mb(self, size, mb):
        assert size_to_mb(size) == mb

    def test_size_to_mb_invalid(self):
        with pytest.raises(ValueError):
            size_to_mb("lots")


# -- Unisolated -------------------------------------------------------------


class TestUnisolatedAdapter:
    async def test_exec_runs_in_worktree(self, tmp_path: Path):
        (tmp_path / "marker").write_text("here")
        adapter = UnisolatedAdapter()
        handle_id = await adapter.create(None, tmp_path, 1)
        assert handle_id.startswith("unisolated-1-")
        assert await adapter.exec(handle_id, "cat marker") == "here"

    async def test_exec_failure_raises(self, tmp_path: Path):
        adapter = UnisolatedAdapter()
        handle_id = await adapter.create(None, tmp_path, 1)
        with pytest.raises(CommandError):
            await adapter.exec(handle_id, "exit 3")

    async def test_destroy_is_idempotent(self, tmp_path: Path):
        adapter = UnisolatedAdapter()
        handle_id = await adapter.create(None, tmp_path, 1)
        await adapter.destroy(handle_id)
        await adapter.destroy(handle_id)
        await adapter.destroy("never-existed")

    async def test_availability_and_stats(self, tmp_path: Path):
        adapter = UnisolatedAdapter()
        assert await adapter.is_available() is True
        assert await adapter.get_stats("anything") is None
        assert adapter.interactive_prefix("anything") == []


# -- Container --------------------------------------------------------------


@pytest.fixture
def container(tmp_path: Path) -> ContainerAdapter:
    iso = IsolationConfig(
        limits=ResourceLimits(memory="4g", cpus="2", pids=64),
        mounts=[MountConfig(source="./cache", target="/cache", mode="rw")],
        environment={"LOG_LEVEL": "debug"},
    )
    return ContainerAdapter(DefinitionLoader(tmp_path, iso))


class TestContainerRunArgs:
    def test_hardening_flags(self, container: ContainerAdapter, tmp_path: Path):
        wt = tmp_path / ".worktrees" / "agent-alpha"
        args = container.build_run_args(None, wt, 1, "sid-1")

        assert args[:2] == ["run", "-d"]
        assert _value_after(args, "--memory") == "4g"
        assert _value_after(args, "--cpus") == "2"
        assert _value_after(args, "--pids-limit") == "64"
        assert _value_after(args, "--cap-drop") == "ALL"
        assert _value_after(args, "--security-opt") == "no-new-privileges"
        assert _value_after(args, "--network") == "none"
        assert _value_after(args, "--user") == "1000:1000"
        assert "--read-only" in args
        assert "--runtime" not in args
        assert args[-3:] == ["orchestra-agent:latest", "sleep", "infinity"]

    def test_labels_and_mounts(self, container: ContainerAdapter, tmp_path: Path):
        wt = tmp_path / ".worktrees" / "agent-alpha"
        args = container.build_run_args(None, wt, 1, "sid-1")

        assert "orchestra.managed=true" in args
        assert "orchestra.agent-id=1" in args
        assert f"orchestra.worktree-path={wt}" in args
        assert f"{wt}:/workspace:rw" in args
        assert f"{wt}/cache:/cache:rw" in args
        assert "LOG_LEVEL=debug" in args
        assert "ORCHESTRA_SESSION_ID=sid-1" in args
        assert _value_after(args, "--name") == ContainerAdapter.container_name(1, wt)

    def test_gvisor_runtime(self, tmp_path: Path):
        adapter = ContainerAdapter(DefinitionLoader(tmp_path), IsolationTier.GVISOR, runtime="runsc")
        args = adapter.build_run_args(None, tmp_path, 1)
        assert _value_after(args, "--runtime") == "runsc"

    def test_container_name_is_stable(self, tmp_path: Path):
        name = ContainerAdapter.container_name(3, tmp_path / "agent-charlie")
        assert name == ContainerAdapter.container_name(3, tmp_path / "agent-charlie")
        assert name.startswith("orchestra-agent-3-")
        assert name != ContainerAdapter.container_name(3, tmp_path / "agent-other")


class TestParseStats:
    def test_mib(self):
        stats = parse_stats("512MiB / 4GiB,3.20%")
        assert stats.memory_mb == 512
        assert stats.cpu_percent == 3.2

    def test_gib(self):
        assert parse_stats("1.5GiB / 4GiB,0.00%").memory_mb == 1536

    @pytest.mark.parametrize("line", ["", "garbage", "512MiB / 4GiB,n/a"])
    def test_unparseable(self, line):
        assert parse_stats(line) is None


class TestContainerLifecycle:
    async def test_create_passes_memory_flag(self, container: ContainerAdapter, tmp_path: Path):
        run = AsyncMock(return_value=(0, "abc123def456\n", ""))
        with patch("orchestra.proc.run", run):
            handle_id = await container.create(None, tmp_path, 1, "sid-1")

        assert handle_id == "abc123def456"
        argv = list(run.await_args.args)
        assert argv[:2] == ["docker", "run"]
        assert _value_after(argv, "--memory") == "4g"

    async def test_failed_create_removes_container(self, container: ContainerAdapter, tmp_path: Path):
        run = AsyncMock(side_effect=[(125, "", "image not found"), (0, "", "")])
        with patch("orchestra.proc.run", run):
            with pytest.raises(CommandError, match="image not found"):
                await container.create(None, tmp_path, 1)

        cleanup = run.await_args_list[1].args
        assert cleanup == ("docker", "rm", "-f", ContainerAdapter.container_name(1, tmp_path))

    async def test_destroy_tolerates_missing_container(self, container: ContainerAdapter):
        run = AsyncMock(return_value=(1, "", "Error: No such container: abc"))
        with patch("orchestra.proc.run", run):
            await container.destroy("abc")
            await container.destroy("abc")
        assert run.await_count == 2

    async def test_destroy_tolerates_docker_failure(self, container: ContainerAdapter):
        with patch("orchestra.proc.run", AsyncMock(side_effect=OSError("docker gone"))):
            await container.destroy("abc")

    async def test_get_stats(self, container: ContainerAdapter):
        run = AsyncMock(return_value=(0, "512MiB / 4GiB,3.20%\n", ""))
        with patch("orchestra.proc.run", run):
            stats = await container.get_stats("abc")
        assert (stats.memory_mb, stats.cpu_percent) == (512, 3.2)
        assert "--no-stream" in run.await_args.args

    async def test_exec(self, container: ContainerAdapter):
        run = AsyncMock(return_value=(0, "ok\n", ""))
        with patch("orchestra.proc.run", run):
            assert await container.exec("abc", "make test") == "ok\n"
        assert run.await_args.args == ("docker", "exec", "abc", "sh", "-c", "make test")

    async def test_list_managed(self, container: ContainerAdapter):
        out = "c1\t3\t/repo/.worktrees/agent-charlie\trunning\nc2\t\t/x\texited\nmalformed\n"
        with patch("orchestra.proc.run", AsyncMock(return_value=(0, out, ""))):
            handles = await container.list_managed()
        assert len(handles) == 1
        assert handles[0].handle_id == "c1"
        assert handles[0].agent_id == 3
        assert handles[0].worktree_path == Path("/repo/.worktrees/agent-charlie")

    async def test_availability_check(self, container: ContainerAdapter, tmp_path: Path):
        with patch("orchestra.isolation.container.shutil.which", return_value=None):
            assert await container.is_available() is False

        gvisor = ContainerAdapter(DefinitionLoader(tmp_path), IsolationTier.GVISOR, runtime="runsc")
        with patch("orchestra.isolation.container.shutil.which", return_value="/usr/bin/docker"):
            with patch("orchestra.proc.run", AsyncMock(return_value=(0, '{"runc":{}}', ""))):
                assert await gvisor.is_available() is False
            with patch("orchestra.proc.run", AsyncMock(return_value=(0, '{"runc":{},"runsc":{}}', ""))):
                assert await gvisor.is_available() is True
            with patch("orchestra.proc.run", AsyncMock(side_effect=OSError("boom"))):
                assert await container.is_available() is False

    def test_display_info_tolerates_missing_definition(self, container: ContainerAdapter):
        info = container.get_display_info("repo:missing")
        assert info.name == "repo:missing"
        assert "not found" in info.description

        info = container.get_display_info()
        assert info.memory == "4g"
        assert info.source == "orchestra-agent:latest"


# -- Registry ---------------------------------------------------------------


class TestRegistry:
    def _registry(self, fake_adapter, **available) -> AdapterRegistry:
        registry = AdapterRegistry()
        for tier in (IsolationTier.NONE, IsolationTier.CONTAINER, IsolationTier.MICROVM):
            registry.register(fake_adapter(tier, available=available.get(tier.value, True)))
        return registry

    async def test_requested_tier_available(self, fake_adapter):
        resolution = await self._registry(fake_adapter).resolve_tier(IsolationTier.CONTAINER)
        assert resolution.tier == IsolationTier.CONTAINER
        assert resolution.fell_back is False

    async def test_below_minimum_rejected(self, fake_adapter):
        with pytest.raises(TierPolicyError):
            await self._registry(fake_adapter).resolve_tier(
                IsolationTier.NONE, minimum=IsolationTier.CONTAINER
            )

    async def test_fallback_requires_confirmation(self, fake_adapter):
        registry = self._registry(fake_adapter, microvm=False)
        with pytest.raises(BackendUnavailableError, match="container"):
            await registry.resolve_tier(IsolationTier.MICROVM)

    async def test_fallback_picks_highest_available(self, fake_adapter):
        registry = self._registry(fake_adapter, microvm=False)
        resolution = await registry.resolve_tier(IsolationTier.MICROVM, allow_fallback=True)
        assert resolution.tier == IsolationTier.CONTAINER
        assert resolution.requested == IsolationTier.MICROVM
        assert resolution.fell_back is True

    async def test_fallback_never_below_minimum(self, fake_adapter):
        registry = self._registry(fake_adapter, microvm=False, container=False)
        with pytest.raises(BackendUnavailableError):
            await registry.resolve_tier(
                IsolationTier.MICROVM, minimum=IsolationTier.CONTAINER, allow_fallback=True
            )

    async def test_unregistered_tier(self, fake_adapter):
        registry = self._registry(fake_adapter)
        resolution = await registry.resolve_tier(IsolationTier.SANDBOX, allow_fallback=True)
        assert resolution.tier == IsolationTier.NONE

    async def test_available_tiers(self, fake_adapter):
        registry = self._registry(fake_adapter, container=False)
        assert await registry.available_tiers() == [IsolationTier.NONE, IsolationTier.MICROVM]

    def test_default_registry(self, tmp_path: Path):
        registry = build_default_registry(DefinitionLoader(tmp_path))
        assert registry.tiers() == [
            IsolationTier.NONE,
            IsolationTier.CONTAINER,
            IsolationTier.GVISOR,
            IsolationTier.MICROVM,
        ]
        assert registry.get(IsolationTier.SANDBOX) is None
        assert registry.get(IsolationTier.GVISOR).runtime == "runsc"


# -- Manager ----------------------------------------------------------------


@pytest.fixture
def managed(fake_adapter):
    adapter = fake_adapter(IsolationTier.CONTAINER)
    registry = AdapterRegistry()
    registry.register(UnisolatedAdapter())
    registry.register(adapter)
    return IsolationManager(registry), adapter


class TestIsolationManager:
    async def test_one_handle_per_agent(self, managed, tmp_path: Path):
        manager, adapter = managed
        first = await manager.create(1, IsolationTier.CONTAINER, tmp_path)
        second = await manager.create(1, IsolationTier.CONTAINER, tmp_path)
        assert first is second
        assert len(adapter.created) == 1
        assert manager.handle_for(1) is first

    async def test_unregistered_tier(self, managed, tmp_path: Path):
        manager, _ = managed
        with pytest.raises(BackendUnavailableError):
            await manager.create(1, IsolationTier.MICROVM, tmp_path)

    async def test_exec_routes_to_adapter(self, managed, tmp_path: Path):
        manager, _ = managed
        handle = await manager.create(1, IsolationTier.CONTAINER, tmp_path)
        assert await manager.exec(1, "ls") == f"{handle.handle_id}: ls"

    async def test_exec_unknown_agent(self, managed):
        manager, _ = managed
        with pytest.raises(HandleNotFoundError):
            await manager.exec(9, "ls")

    async def test_destroy_twice(self, managed, tmp_path: Path):
        manager, adapter = managed
        await manager.create(1, IsolationTier.CONTAINER, tmp_path)
        await manager.destroy(1)
        await manager.destroy(1)
        assert len(adapter.destroyed) == 1
        assert manager.handle_for(1) is None

    async def test_stats(self, managed, tmp_path: Path):
        manager, _ = managed
        handle = await manager.create(1, IsolationTier.CONTAINER, tmp_path)
        stats = await manager.stats(1)
        assert stats.memory_mb == 128
        assert handle.stats is stats
        assert await manager.stats(2) is None

    async def test_destroy_all_continues_after_failure(self, managed, tmp_path: Path):
        manager, adapter = managed
        await manager.create(1, IsolationTier.CONTAINER, tmp_path / "a")
        await manager.create(2, IsolationTier.CONTAINER, tmp_path / "b")
        adapter.destroy = AsyncMock(side_effect=[RuntimeError("stuck"), None])
        await manager.destroy_all()
        assert manager.handles() == []
        assert adapter.destroy.await_count == 2

    async def test_cleanup_by_worktree(self, managed, tmp_path: Path):
        manager, adapter = managed
        await manager.create(1, IsolationTier.CONTAINER, tmp_path / "agent-alpha")
        adapter.managed.append(
            BackendHandle("leftover", IsolationTier.CONTAINER, 1, tmp_path / "agent-alpha")
        )
        assert await manager.cleanup_by_worktree(tmp_path / "agent-alpha") == 2
        assert manager.handle_for(1) is None

    async def test_cleanup_orphans(self, managed, tmp_path: Path):
        manager, adapter = managed
        root = tmp_path / ".worktrees"
        adapter.managed = [
            BackendHandle("c1", IsolationTier.CONTAINER, 1, root / "agent-alpha"),
            BackendHandle("c2", IsolationTier.CONTAINER, 2, root / "agent-gone"),
            BackendHandle("c3", IsolationTier.CONTAINER, 1, Path("/other/repo/agent-alpha")),
        ]
        removed = await manager.cleanup_orphans({root / "agent-alpha"}, scope=root)
        assert removed == 1
        assert adapter.destroyed == ["c2"]

    async def test_adopt_keeps_first_handle(self, managed, tmp_path: Path):
        manager, _ = managed
        first = BackendHandle("c1", IsolationTier.CONTAINER, 1, tmp_path)
        manager.adopt(first)
        manager.adopt(BackendHandle("c9", IsolationTier.CONTAINER, 1, tmp_path))
        assert manager.handle_for(1) is first
        assert manager.interactive_prefix(1) == ["fake-exec", "c1"]
        assert manager.interactive_prefix(2) == []
