"""
Unit tests for DevServerLauncher.

Sandboxes are scripted fakes and the launcher's sleep is recorded instead of
awaited, so elapsed launch time is the sum of the recorded sleeps.
"""

import io
from types import SimpleNamespace

import pytest
from dotenv import dotenv_values

from conftest import FakeSandboxHandle, InMemoryProjectStore, make_settings
from services.dev_server_launcher import DevServerLauncher, detect_runtime_error
from services.errors import SandboxUnreachable

ENV_PATH = "/home/user/app/.env.local"


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)

    @property
    def elapsed(self) -> float:
        return sum(self.calls)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def seeded_store() -> InMemoryProjectStore:
    store = InMemoryProjectStore()
    store.seed(id="proj-1", user_id="user-1", sandbox_id="sbx-1")
    return store


def make_launcher(store, sleep, **settings) -> DevServerLauncher:
    return DevServerLauncher(store=store, settings=make_settings(**settings), sleep=sleep)


class TestReadiness:
    """Readiness polling and its debounce"""

    @pytest.mark.asyncio
    async def test_confirms_on_second_consecutive_probe(self, seeded_store, sleep):
        """Fresh sandbox whose server comes up: ready after two probes, 6s in."""
        sandbox = FakeSandboxHandle("sbx-1")
        launcher = make_launcher(seeded_store, sleep)

        result = await launcher.launch(sandbox, "proj-1")

        assert result.server_ready is True
        assert result.warning is None
        assert sandbox.probe_count() == 2
        assert sleep.elapsed == 6.0

        record = await seeded_store.get("proj-1")
        assert record.server_ready is True
        assert record.server_status == "running"
        assert record.sandbox_url == "https://8081-sbx-1.e2b.app?sandboxId=sbx-1"
        assert record.tunnel_url == "https://sbx-1.ngrok.dev"

    @pytest.mark.asyncio
    async def test_single_pass_then_fail_is_not_ready(self, seeded_store, sleep):
        """One passing probe followed by failures never marks the server ready."""
        sandbox = FakeSandboxHandle("sbx-1", starts_server=False, probe_results=[True])
        launcher = make_launcher(seeded_store, sleep)

        result = await launcher.launch(sandbox, "proj-1")

        assert result.server_ready is False
        assert (await seeded_store.get("proj-1")).server_ready is False

    @pytest.mark.asyncio
    async def test_streak_resets_after_a_failed_probe(self, seeded_store, sleep):
        sandbox = FakeSandboxHandle(
            "sbx-1", starts_server=False, probe_results=[True, False, True, True]
        )
        launcher = make_launcher(seeded_store, sleep)

        result = await launcher.launch(sandbox, "proj-1")

        assert result.server_ready is True
        assert sandbox.probe_count() == 4
        assert sleep.elapsed == 12.0

    @pytest.mark.asyncio
    async def test_unconfirmed_launch_still_returns_urls(self, seeded_store, sleep):
        """Exceeding the wait bound is not a failure: URLs come back unconfirmed."""
        sandbox = FakeSandboxHandle("sbx-1", starts_server=False)
        launcher = make_launcher(seeded_store, sleep)

        result = await launcher.launch(sandbox, "proj-1")

        assert result.server_ready is False
        assert result.url == "https://8081-sbx-1.e2b.app?sandboxId=sbx-1"
        assert result.tunnel_url == "https://sbx-1.ngrok.dev"
        assert sleep.elapsed == 60.0
        assert sandbox.probe_count() == 20

        data = result.to_dict()
        assert data["success"] is True
        assert data["serverReady"] is False
        assert data["warning"]["error_type"] == "launch_timeout"

        record = await seeded_store.get("proj-1")
        assert record.tunnel_url == "https://sbx-1.ngrok.dev"
        assert record.server_status == "running"

    @pytest.mark.asyncio
    async def test_exact_status_code_required(self, seeded_store, sleep):
        sandbox = FakeSandboxHandle(
            "sbx-1", starts_server=False, probe_results=["2000", "1404", "404", "200"]
        )
        launcher = make_launcher(seeded_store, sleep)

        assert await launcher.probe(sandbox) is False
        assert await launcher.probe(sandbox) is False
        assert await launcher.probe(sandbox) is True
        assert await launcher.probe(sandbox) is True


class TestLaunchSteps:
    """Pre-launch steps around the start command"""

    @pytest.mark.asyncio
    async def test_env_file_is_merged_not_overwritten(self, seeded_store, sleep):
        sandbox = FakeSandboxHandle("sbx-1")
        sandbox.files.data[ENV_PATH] = (
            "EXPO_PUBLIC_CONVEX_URL=https://happy-otter.convex.cloud\n"
            "EXPO_PUBLIC_SANDBOX_ID=sbx-old\n"
        )
        launcher = make_launcher(seeded_store, sleep)

        await launcher.launch(sandbox, "proj-1")

        content = sandbox.files.data[ENV_PATH]
        assert "EXPO_PUBLIC_CONVEX_URL=https://happy-otter.convex.cloud" in content
        assert "EXPO_PUBLIC_SANDBOX_ID=sbx-1" in content
        assert "EXPO_PUBLIC_PROJECT_ID=proj-1" in content
        assert "sbx-old" not in content

    @pytest.mark.asyncio
    async def test_env_values_with_spaces_and_hashes_survive(self, seeded_store, sleep):
        sandbox = FakeSandboxHandle("sbx-1")
        sandbox.files.data[ENV_PATH] = (
            'CONVEX_SITE_NAME="my app # prod"\n'
            'GREETING="say \\"hi\\""\n'
        )
        launcher = make_launcher(seeded_store, sleep)

        await launcher.launch(sandbox, "proj-1")

        written = dotenv_values(stream=io.StringIO(sandbox.files.data[ENV_PATH]))
        assert written == {
            "CONVEX_SITE_NAME": "my app # prod",
            "GREETING": 'say "hi"',
            "EXPO_PUBLIC_PROJECT_ID": "proj-1",
            "EXPO_PUBLIC_SANDBOX_ID": "sbx-1",
        }

    @pytest.mark.asyncio
    async def test_env_file_created_when_missing(self, seeded_store, sleep):
        sandbox = FakeSandboxHandle("sbx-1")
        launcher = make_launcher(seeded_store, sleep)

        await launcher.launch(sandbox, "proj-1")

        assert sandbox.files.data[ENV_PATH] == (
            "EXPO_PUBLIC_PROJECT_ID=proj-1\nEXPO_PUBLIC_SANDBOX_ID=sbx-1\n"
        )

    @pytest.mark.asyncio
    async def test_occupied_port_is_freed_even_when_healthy(self, seeded_store, sleep):
        sandbox = FakeSandboxHandle("sbx-1", server_up=True)
        sandbox.port_busy = True
        launcher = make_launcher(seeded_store, sleep, port_release_wait=2.0)

        result = await launcher.launch(sandbox, "proj-1")

        assert any(cmd.startswith("lsof -ti:8081") for cmd in sandbox.commands)
        assert 2.0 in sleep.calls
        assert result.server_ready is True

    @pytest.mark.asyncio
    async def test_command_order(self, seeded_store, sleep):
        sandbox = FakeSandboxHandle("sbx-1")
        launcher = make_launcher(seeded_store, sleep)

        await launcher.launch(sandbox, "proj-1")

        assert sandbox.timeouts_ms == [3_600_000]
        assert sandbox.commands[0] == "pkill -9 ngrok || true"
        assert sandbox.commands[1].startswith("netstat -tuln")
        assert "fs.inotify.max_user_watches=524288" in sandbox.commands[2]
        start = sandbox.commands[3]
        assert start.startswith("cd /home/user/app && CI=false bun install")
        assert "--ngrokurl sbx-1" in start

    @pytest.mark.asyncio
    async def test_tunnel_token_passed_through_env(self, seeded_store, sleep):
        sandbox = FakeSandboxHandle("sbx-1")
        launcher = make_launcher(seeded_store, sleep, ngrok_authtoken="secret-token")

        await launcher.launch(sandbox, "proj-1")

        index = sandbox.commands.index("ngrok config add-authtoken $NGROK_AUTHTOKEN")
        assert sandbox.command_envs[index] == {"NGROK_AUTHTOKEN": "secret-token"}
        assert all("secret-token" not in cmd for cmd in sandbox.commands)

    @pytest.mark.asyncio
    async def test_unreachable_sandbox_propagates(self, seeded_store, sleep):
        sandbox = FakeSandboxHandle("sbx-1", alive=False)
        launcher = make_launcher(seeded_store, sleep)

        with pytest.raises(SandboxUnreachable):
            await launcher.launch(sandbox, "proj-1")

        assert seeded_store.updates == []

    @pytest.mark.asyncio
    async def test_launch_for_superseded_sandbox_is_not_recorded(self, sleep):
        store = InMemoryProjectStore()
        store.seed(id="proj-1", user_id="user-1", sandbox_id="sbx-2")
        launcher = make_launcher(store, sleep)

        sandbox = FakeSandboxHandle("sbx-1")

        result = await launcher.launch(sandbox, "proj-1")

        assert result.server_ready is True
        assert store.updates == []
        assert (await store.get("proj-1")).sandbox_id == "sbx-2"
        assert sandbox.files.watches == {}

    @pytest.mark.asyncio
    async def test_app_dir_changes_forwarded_after_launch(self, seeded_store, sleep):
        changes = []
        sandbox = FakeSandboxHandle("sbx-1")
        launcher = DevServerLauncher(
            store=seeded_store,
            settings=make_settings(),
            sleep=sleep,
            change_notifier=changes.append,
        )

        await launcher.launch(sandbox, "proj-1")
        watch = sandbox.files.watches["/home/user/app"]
        watch.on_event(SimpleNamespace(name="/home/user/app/app/index.tsx", type="write"))

        assert [(c.project_id, c.path, c.action) for c in changes] == [
            ("proj-1", "app/index.tsx", "modified")
        ]
        assert launcher.file_watcher.watched_sandbox("proj-1") == "sbx-1"


class TestRuntimeErrors:
    def test_detects_error_lines(self):
        chunk = "Bundling...\nTypeError: undefined is not a function\nmore"
        assert detect_runtime_error(chunk) == "TypeError: undefined is not a function"
        assert detect_runtime_error("Unable to resolve module ./Missing").startswith(
            "Unable to resolve module"
        )

    def test_ignores_normal_output(self):
        assert detect_runtime_error("Web Bundled 812ms index.js (1043 modules)") is None
        assert detect_runtime_error("") is None

    @pytest.mark.asyncio
    async def test_server_output_forwarded_to_notifier(self, seeded_store, sleep):
        seen = []
        sandbox = FakeSandboxHandle(
            "sbx-1",
            server_output=[
                "Starting Metro Bundler",
                "ReferenceError: Foo is not defined",
                "Web Bundled 900ms",
            ],
        )
        launcher = DevServerLauncher(
            store=seeded_store,
            settings=make_settings(),
            sleep=sleep,
            error_notifier=lambda project_id, message: seen.append((project_id, message)),
        )

        result = await launcher.launch(sandbox, "proj-1")

        assert seen == [("proj-1", "ReferenceError: Foo is not defined")]
        assert result.server_ready is True
