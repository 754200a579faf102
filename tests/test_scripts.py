from __future__ import annotations

import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from tubedesc.dependencies import ServiceContainer
from tubedesc.scripts import export_openapi, sync_now
from tubedesc.services.youtube_client import RemoteVideo


def test_export_openapi_writes_schema(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    export_openapi.main()

    schema = json.loads((tmp_path / "openapi" / "openapi.json").read_text(encoding="utf-8"))
    operation_ids = {
        operation["operationId"]
        for path_item in schema["paths"].values()
        for operation in path_item.values()
    }
    assert {"channel_sync", "videos_update", "template_preview", "health_check"} <= operation_ids


def test_sync_now_runs_single_channel(
    services: ServiceContainer,
    fake_youtube: Any,
    connect_channel: Callable[..., Any],
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    channel = connect_channel()
    fake_youtube.set_uploads(
        "UC_test",
        [RemoteVideo(video_id="v1", title="One", description="d", published_at=None)],
    )
    monkeypatch.setattr("tubedesc.scripts.sync_now.build_services", lambda *_args, **_kwargs: services)
    monkeypatch.setattr("tubedesc.scripts.sync_now.configure_application_logging", lambda _settings: None)
    monkeypatch.setattr(
        sys,
        "argv",
        ["tubedesc-sync", "--channel-id", channel.id, "--user-id", "user-1"],
    )

    sync_now.main()

    output = json.loads(capsys.readouterr().out)
    assert output["inserted"] == 1
    assert output["status"] == "completed"


def test_sync_now_drains_queue(
    services: ServiceContainer,
    connect_channel: Callable[..., Any],
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    connect_channel()
    monkeypatch.setattr("tubedesc.scripts.sync_now.build_services", lambda *_args, **_kwargs: services)
    monkeypatch.setattr("tubedesc.scripts.sync_now.configure_application_logging", lambda _settings: None)
    monkeypatch.setattr(sys, "argv", ["tubedesc-sync", "--enqueue-scheduled"])

    sync_now.main()

    output = capsys.readouterr().out
    assert "Enqueued 1 channel syncs" in output
    assert "succeeded=1" in output


def test_sync_now_requires_user_with_channel(
    services: ServiceContainer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr("tubedesc.scripts.sync_now.build_services", lambda *_args, **_kwargs: services)
    monkeypatch.setattr("tubedesc.scripts.sync_now.configure_application_logging", lambda _settings: None)
    monkeypatch.setattr(sys, "argv", ["tubedesc-sync", "--channel-id", "chan_1"])

    with pytest.raises(SystemExit):
        sync_now.main()
