"""
自动化剧本执行器（ansible-playbook）

每次运行在 automation.work_dir 下创建独立的临时目录：
    inventory.ini   目标主机 + 按标签分组
    playbook.yml    剧本内容
    vars.json       任务 config.variables（可选，通过 -e @vars.json 传入）
    key_<id>        私钥认证主机的密钥文件（0600）

子进程启动后立即登记到调度器，stop 时由调度器杀掉整个进程树。
stdout / stderr 合并为一个持续增长的输出缓冲，退出码 0 为 success，其余为 failed。
"""

import asyncio
import codecs
import json
import os
import re
import shlex
import shutil
import tempfile
from typing import Optional

from core.exceptions import AutomationNotFoundError, HandlerError
from core.logger import get_logger
from models.host import AuthType, HostRecord
from models.task import Task, TaskResult, TaskStatus, TaskType

_logger = get_logger("services.automation")

_READ_CHUNK = 4096

# inventory 中的主机别名和组名
_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]")

_SSH_COMMON_ARGS = "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"

_VERSION_RES = (
    re.compile(r"ansible[\w-]*\s\[core\s([\d.]+)\]", re.IGNORECASE),
    re.compile(r"ansible[\w-]*\s([\d.]+)", re.IGNORECASE),
)


def _inventory_name(name: str) -> str:
    return _NAME_RE.sub("_", name.strip()) or "host"


class AutomationRunner:
    """自动化任务处理器"""

    def __init__(self, datastore, vault, registry, binary: str = "ansible-playbook",
                 work_dir: Optional[str] = None, keep_run_dirs: bool = False):
        """
        Args:
            datastore: Datastore 实例
            vault: CredentialVault 实例，用于解密主机凭据
            registry: 进程登记方（TaskScheduler），提供 register_process(task_id, process, kind)
            binary: ansible-playbook 可执行文件
            work_dir: 各次运行目录的父目录
            keep_run_dirs: 运行结束后保留运行目录（排查问题用）
        """
        self._datastore = datastore
        self._vault = vault
        self._registry = registry
        self._binary = binary
        self._work_dir = work_dir or os.path.join(tempfile.gettempdir(), "controlhub")
        self._keep_run_dirs = keep_run_dirs

        # 运行中任务的实时输出 {task_id: [chunk, ...]}
        self._live: dict[int, list[str]] = {}

    def live_output(self, task_id: int) -> Optional[str]:
        """运行中任务当前已产生的输出，未在运行返回 None"""
        chunks = self._live.get(task_id)
        return "".join(chunks) if chunks is not None else None

    async def run(self, task: Task) -> TaskResult:
        automation_id = task.automation_id or task.config.get("automation_id")
        if automation_id is None:
            raise HandlerError("自动化任务缺少 automation_id")
        automation = await self._datastore.get_automation(int(automation_id))
        if automation is None:
            raise AutomationNotFoundError(automation_id)

        hosts = await self._resolve_hosts(task)

        os.makedirs(self._work_dir, exist_ok=True)
        run_dir = tempfile.mkdtemp(prefix=f"run-{task.id}-", dir=self._work_dir)
        _logger.info(f"任务 {task.id} 运行目录: {run_dir}")

        try:
            self._write_file(run_dir, "inventory.ini", self.build_inventory(hosts, run_dir))
            self._write_file(run_dir, "playbook.yml", automation.content)

            args = [self._binary, "-i", "inventory.ini", "playbook.yml"]
            variables = task.config.get("variables")
            if variables:
                self._write_file(run_dir, "vars.json", json.dumps(variables, indent=2, ensure_ascii=False))
                args += ["-e", "@vars.json"]

            return await self._spawn(task.id, args, run_dir)
        finally:
            if self._keep_run_dirs:
                _logger.info(f"保留运行目录: {run_dir}")
            else:
                shutil.rmtree(run_dir, ignore_errors=True)

    async def _resolve_hosts(self, task: Task) -> list[HostRecord]:
        host_ids = task.targets() or [int(h) for h in task.config.get("host_ids", [])]
        hosts = []
        for host_id in host_ids:
            host = await self._datastore.get_host(host_id)
            if host is None:
                _logger.warning(f"任务 {task.id} 的目标主机 {host_id} 不存在，已忽略")
                continue
            hosts.append(host)
        if not hosts:
            raise HandlerError("任务没有可用的目标主机")
        return hosts

    def build_inventory(self, hosts: list[HostRecord], run_dir: str) -> str:
        """
        生成 INI 格式 inventory：[servers] 组包含全部主机，每个标签一个组。

        私钥认证的主机会在 run_dir 内写出 0600 的密钥文件。
        """
        lines = ["[servers]"]
        aliases: dict[int, str] = {}
        used: set[str] = set()

        for host in hosts:
            alias = _inventory_name(host.name)
            if alias in used:
                alias = f"{alias}_{host.id}"
            used.add(alias)
            aliases[host.id] = alias

            secret = self._vault.decrypt(host.auth_data)
            if host.auth_type == AuthType.PASSWORD:
                auth = f"ansible_ssh_pass={shlex.quote(secret)}"
            else:
                key_path = os.path.join(run_dir, f"key_{host.id}")
                self._write_file(run_dir, f"key_{host.id}", secret if secret.endswith("\n") else secret + "\n", mode=0o600)
                auth = f"ansible_ssh_private_key_file={shlex.quote(key_path)}"

            lines.append(
                f"{alias} ansible_host={host.hostname} ansible_user={host.username} "
                f"ansible_port={host.port} {auth} "
                f"ansible_ssh_common_args='{_SSH_COMMON_ARGS}'"
            )

        groups: dict[str, list[str]] = {}
        for host in hosts:
            for tag in host.tags:
                members = groups.setdefault(_inventory_name(tag), [])
                if aliases[host.id] not in members:
                    members.append(aliases[host.id])

        for group, members in groups.items():
            lines.append("")
            lines.append(f"[{group}]")
            lines.extend(members)

        return "\n".join(lines) + "\n"

    @staticmethod
    def _write_file(run_dir: str, name: str, content: str, mode: int = 0o644):
        path = os.path.join(run_dir, name)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)

    async def _spawn(self, task_id: int, args: list[str], run_dir: str) -> TaskResult:
        env = os.environ.copy()
        env["ANSIBLE_HOST_KEY_CHECKING"] = "False"
        env["ANSIBLE_FORCE_COLOR"] = "0"

        _logger.info(f"任务 {task_id} 执行: {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=run_dir,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise HandlerError(f"无法启动 {self._binary}: {e}") from e

        self._registry.register_process(task_id, process, TaskType.AUTOMATION)

        chunks = self._live[task_id] = []
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await process.stdout.read(_READ_CHUNK)
                if not data:
                    break
                chunks.append(decoder.decode(data))
            chunks.append(decoder.decode(b"", final=True))
            exit_code = await process.wait()
        finally:
            self._live.pop(task_id, None)

        output = "".join(chunks)
        _logger.info(f"任务 {task_id} 的 ansible-playbook 退出: {exit_code}")
        return TaskResult(
            status=TaskStatus.SUCCESS if exit_code == 0 else TaskStatus.FAILED,
            output=output,
            exit_code=exit_code,
        )

    async def check_installation(self) -> dict:
        """检查自动化工具是否可用，返回 {"installed": bool, "version": str | None}"""
        try:
            process = await asyncio.create_subprocess_exec(
                self._binary, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            stdout, _ = await process.communicate()
        except OSError:
            return {"installed": False, "version": None}

        if process.returncode != 0:
            return {"installed": False, "version": None}

        text = stdout.decode("utf-8", errors="replace")
        for pattern in _VERSION_RES:
            match = pattern.search(text)
            if match:
                return {"installed": True, "version": match.group(1)}
        return {"installed": True, "version": None}
