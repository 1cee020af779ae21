"""Publisherのユニットテスト。"""

import os
from pathlib import Path

import pytest

from berth.config import ServerConfig
from berth.models.errors import ArtifactMissingError, ContainerEngineError, ValidationFailedError
from berth.services.publisher import Publisher, public_url, replace_directory


def _make_dist(root: Path) -> Path:
    dist = root / "dist"
    (dist / "assets" / "img").mkdir(parents=True)
    (dist / "index.html").write_text("<h1>hi</h1>", encoding="utf-8")
    (dist / "assets" / "app.js").write_text("console.log(1)", encoding="utf-8")
    (dist / "assets" / "img" / "logo.svg").write_text("<svg/>", encoding="utf-8")
    return dist


class TestPublicUrl:
    def test_joins_app_name(self) -> None:
        assert public_url("https://apps.example.com", "demo") == "https://apps.example.com/demo"
        assert public_url("https://apps.example.com/sites/", "demo") == "https://apps.example.com/sites/demo"

    def test_missing_or_invalid_base_url(self) -> None:
        assert public_url("", "demo") is None
        assert public_url("not a url", "demo") is None
        assert public_url("ftp://example.com", "demo") is None


class TestReplaceDirectory:
    def test_copies_nested_files_and_clears_old_content(self, tmp_path: Path) -> None:
        dist = _make_dist(tmp_path)
        dest = tmp_path / "out"
        dest.mkdir()
        (dest / "stale.html").write_text("old", encoding="utf-8")

        copied = replace_directory(dist, dest)

        assert copied == 3
        assert (dest / "assets" / "img" / "logo.svg").read_text(encoding="utf-8") == "<svg/>"
        assert not (dest / "stale.html").exists()

    def test_skips_symlinks(self, tmp_path: Path) -> None:
        dist = _make_dist(tmp_path)
        secret = tmp_path / "secret.txt"
        secret.write_text("secret", encoding="utf-8")
        os.symlink(secret, dist / "leak.txt")

        replace_directory(dist, tmp_path / "out")

        assert not (tmp_path / "out" / "leak.txt").exists()


class TestPublisher:
    async def test_publish_copies_and_recreates_container(
        self, publisher: Publisher, fake_engine, server_config: ServerConfig, tmp_path: Path
    ) -> None:
        fake_engine.add("static_demo", status="Up 3 days")
        dist = _make_dist(tmp_path / "project")
        messages: list[str] = []

        result = await publisher.publish("demo", dist, on_output=messages.append)

        dest = server_config.output_root.resolve() / "demo"
        assert (dest / "index.html").exists()
        assert result.container == "static_demo"
        assert result.status == "running"
        assert result.url == "https://apps.example.com/demo"
        assert ("rm", "static_demo") in fake_engine.calls
        assert fake_engine.calls.index(("rm", "static_demo")) < fake_engine.calls.index(("run", "static_demo"))
        assert fake_engine.runs[-1]["content_dir"] == dest
        assert fake_engine.runs[-1]["network"] is None
        assert any(m.startswith("Copied 3 files") for m in messages)

    async def test_publish_attaches_proxy_network(self, fake_engine, tmp_path: Path) -> None:
        config = ServerConfig(output_root=tmp_path / "out", proxy_network="proxy")
        await Publisher(fake_engine, config).publish("demo", _make_dist(tmp_path))
        assert fake_engine.runs[-1]["network"] == "proxy"

    async def test_missing_artifact_names_expected_path(
        self, publisher: Publisher, fake_engine, tmp_path: Path
    ) -> None:
        expected = tmp_path / "project" / "dist"
        with pytest.raises(ArtifactMissingError) as exc_info:
            await publisher.publish("demo", expected)
        assert str(exc_info.value) == f"dist directory not found at {expected}"
        assert fake_engine.calls == []

    async def test_engine_failure_propagates(self, publisher: Publisher, fake_engine, tmp_path: Path) -> None:
        fake_engine.fail_operations.add("run")
        with pytest.raises(ContainerEngineError):
            await publisher.publish("demo", _make_dist(tmp_path))

    async def test_purge(self, publisher: Publisher, tmp_path: Path) -> None:
        await publisher.publish("demo", _make_dist(tmp_path))
        assert await publisher.purge("demo") is True
        assert not publisher.artifact_dir("demo").exists()
        assert await publisher.purge("demo") is False

    @pytest.mark.parametrize("name", ["", ".", "..", "../data", "a/b"])
    def test_artifact_dir_rejects_traversal(self, publisher: Publisher, name: str) -> None:
        with pytest.raises(ValidationFailedError):
            publisher.artifact_dir(name)

    async def test_purge_rejects_traversal(self, publisher: Publisher, server_config: ServerConfig) -> None:
        keep = server_config.output_root.resolve() / "other" / "index.html"
        keep.parent.mkdir(parents=True)
        keep.write_text("x", encoding="utf-8")

        with pytest.raises(ValidationFailedError):
            await publisher.purge(".")
        assert keep.exists()
