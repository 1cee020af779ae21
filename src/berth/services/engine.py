"""コンテナエンジンCLI（docker互換）の非同期ラッパー。"""

import json
import logging
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from berth.models.app import EngineContainer
from berth.models.common import utc_now
from berth.models.errors import ContainerEngineError, ProcessFailedError
from berth.services.process import ProcessResult, ProcessRunner

logger = logging.getLogger(__name__)

# nginxイメージの公開ディレクトリ
SERVE_ROOT = "/usr/share/nginx/html"

APP_LABEL = "berth.app"


def _parse_created_at(value: Any) -> datetime:
    """`2024-05-01 10:00:00 +0000 UTC` 形式の時刻を解釈する。解釈できなければ現在時刻。"""
    if isinstance(value, str):
        parts = value.split()
        if len(parts) >= 3:
            try:
                return datetime.strptime(" ".join(parts[:3]), "%Y-%m-%d %H:%M:%S %z")
            except ValueError:
                pass
    return utc_now()


def parse_ps_line(line: str) -> EngineContainer | None:
    """`ps --format '{{json .}}'` の1行を解釈する。"""
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("Skipping unparseable container record: %s", line)
        return None
    if not isinstance(record, dict):
        return None

    names = record.get("Names")
    if isinstance(names, list):
        names = names[0] if names else ""
    name = str(names or "").split(",")[0].lstrip("/")
    if not name:
        return None

    status = str(record.get("Status") or "")
    state = str(record.get("State") or status)
    return EngineContainer(
        name=name,
        state=state,
        status=status or state,
        created_at=_parse_created_at(record.get("CreatedAt")),
    )


class ContainerEngine:
    """コンテナの一覧・作成・削除・起動停止を行う。"""

    def __init__(self, runner: ProcessRunner, binary: str = "docker", timeout: float | None = None) -> None:
        self._runner = runner
        self._binary = binary
        self._timeout = timeout

    async def _exec(
        self,
        operation: str,
        args: list[str],
        *,
        capture: bool = False,
        check: bool = True,
    ) -> ProcessResult:
        try:
            return await self._runner.run(
                [self._binary, *args],
                capture=capture,
                check=check,
                timeout=self._timeout,
            )
        except ProcessFailedError as e:
            raise ContainerEngineError(operation, e.exit_code, e.stderr) from e

    async def list_containers(self, prefix: str) -> list[EngineContainer]:
        """名前が `prefix` で始まるコンテナを停止中のものも含めて返す。"""
        result = await self._exec(
            "ps",
            ["ps", "-a", "--no-trunc", "--filter", f"name=^{prefix}", "--format", "{{json .}}"],
            capture=True,
        )
        containers: list[EngineContainer] = []
        for line in result.output.splitlines():
            line = line.strip()
            if not line:
                continue
            container = parse_ps_line(line)
            # 管理プレフィックスの前方一致を再確認
            if container is not None and container.name.startswith(prefix):
                containers.append(container)
        return containers

    async def remove(self, name: str) -> bool:
        """コンテナを強制削除する。存在しなかった場合はFalseを返す。"""
        result = await self._exec("rm", ["rm", "-f", name], check=False)
        if result.success:
            return True
        if "no such container" in result.stderr_tail.lower():
            return False
        raise ContainerEngineError("rm", result.exit_code, result.stderr_tail)

    async def run_static(
        self,
        name: str,
        content_dir: Path,
        image: str,
        *,
        network: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> str:
        """`content_dir` を読み取り専用で公開する常駐コンテナを作成し、コンテナIDを返す。"""
        args = [
            "run",
            "-d",
            "--name",
            name,
            "--restart",
            "unless-stopped",
            "-v",
            f"{content_dir}:{SERVE_ROOT}:ro",
        ]
        for key, value in (labels or {}).items():
            args.extend(["--label", f"{key}={value}"])
        if network:
            args.extend(["--network", network])
        args.append(image)
        result = await self._exec("run", args, capture=True)
        return result.output.strip()

    async def start(self, name: str) -> None:
        await self._exec("start", ["start", name])

    async def stop(self, name: str) -> None:
        await self._exec("stop", ["stop", name])

    async def restart(self, name: str) -> None:
        await self._exec("restart", ["restart", name])
