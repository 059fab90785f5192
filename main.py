"""
OpenClaw Chat 命令行入口：连接 Gateway，查看会话/历史，发送消息，重命名/删除会话，监听事件。
连接参数优先取 --url/--token/--name，否则取 config/connections.json 中第一个（或 --name 指定的）已保存连接。
"""
import asyncio
import os
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from config.settings import Settings
from core.openclaw_gateway import (
    ConnectionConfig,
    ConnectionManager,
    DeviceIdentity,
    GatewayError,
)
from core.openclaw_gateway import dispatcher as names
from utils.logger import logger

app = typer.Typer(
    name="openclaw-chat",
    help="OpenClaw Gateway 聊天客户端。",
    no_args_is_help=True,
)
console = Console()

UrlOption = Annotated[Optional[str], typer.Option("--url", "-u", help="Gateway 地址，如 127.0.0.1:18789")]
TokenOption = Annotated[Optional[str], typer.Option("--token", "-t", help="Gateway token")]
NameOption = Annotated[Optional[str], typer.Option("--name", "-n", help="连接名（或已保存连接的名称）")]
SaveOption = Annotated[bool, typer.Option("--save", help="把 --url/--token 保存为连接配置")]


def _load_settings() -> Settings:
    settings = Settings()
    logger.set_level(settings.get("log_level", "INFO"))
    return settings


def _resolve_config(settings: Settings, url: Optional[str], token: Optional[str], name: Optional[str], save: bool) -> ConnectionConfig:
    if url:
        config = ConnectionConfig(
            name=name or "gateway",
            endpoint=url,
            token=token or "",
            auto_reconnect=bool(settings.get("auto_reconnect", False)),
            device_auth=bool(settings.get("device_auth", False)),
        )
        if save:
            settings.upsert_connection(config)
            settings.save()
            config = settings.get_connection(config.name)
        return config
    saved = settings.get_connection(name) if name else next(iter(settings.list_connections()), None)
    if saved is None:
        console.print("[red]未指定 --url，也没有已保存的连接。[/red]")
        raise typer.Exit(code=2)
    return saved


def _build_manager(settings: Settings) -> ConnectionManager:
    device = None
    if settings.get("device_auth"):
        key_file = os.path.join(settings.config_dir, settings.get("device_key_file", ".device_key.pem"))
        device = DeviceIdentity.load_or_create(key_file)
    return ConnectionManager(
        auth_timeout=float(settings.get("auth_timeout_sec", 10.0)),
        client_info=settings.client_info(),
        device=device,
        history_limit=int(settings.get("history_limit", 100)),
        sessions_limit=int(settings.get("sessions_limit", 100)),
    )


def _run(url, token, name, save, action) -> None:
    """连接 -> 执行 action(manager, connection_id) -> 断开；失败打印「连接名: 原因」并退出码 1。"""
    settings = _load_settings()
    config = _resolve_config(settings, url, token, name, save)

    async def runner():
        manager = _build_manager(settings)
        try:
            connection = await manager.connect(config)
            await action(manager, connection.id)
        finally:
            await manager.close_all()

    try:
        asyncio.run(runner())
    except (GatewayError, OSError, ValueError) as e:
        console.print(f"[red]{escape(ConnectionManager.describe_failure(config.name, e))}[/red]")
        raise typer.Exit(code=1)


@app.command()
def sessions(url: UrlOption = None, token: TokenOption = None, name: NameOption = None, save: SaveOption = False) -> None:
    """列出服务端会话。"""

    async def action(manager: ConnectionManager, connection_id: str):
        items = await manager.list_sessions(connection_id)
        table = Table(title=f"会话（{len(items)}）")
        table.add_column("Key", style="cyan")
        table.add_column("名称")
        table.add_column("类型")
        table.add_column("更新时间", style="dim")
        for s in items:
            table.add_row(s.key, s.name, s.type.value, s.updated_at.astimezone().strftime("%Y-%m-%d %H:%M"))
        console.print(table)

    _run(url, token, name, save, action)


@app.command()
def history(
    session_key: Annotated[str, typer.Argument(help="会话 key，如 agent:main:main")],
    url: UrlOption = None,
    token: TokenOption = None,
    name: NameOption = None,
    save: SaveOption = False,
) -> None:
    """显示会话历史（从早到晚）。"""

    async def action(manager: ConnectionManager, connection_id: str):
        for m in await manager.fetch_history(connection_id, session_key):
            when = m.timestamp.astimezone().strftime("%m-%d %H:%M")
            console.print(f"[dim]{when}[/dim] [bold]{m.sender.name}[/bold]: {m.content}")

    _run(url, token, name, save, action)


@app.command()
def send(
    session_key: Annotated[str, typer.Argument(help="会话 key")],
    text: Annotated[str, typer.Argument(help="消息内容")],
    attach: Annotated[Optional[list[str]], typer.Option("--attach", "-a", help="附件文件路径")] = None,
    url: UrlOption = None,
    token: TokenOption = None,
    name: NameOption = None,
    save: SaveOption = False,
) -> None:
    """发送消息（不等待服务端确认）。"""

    async def action(manager: ConnectionManager, connection_id: str):
        attachments = [await manager.upload_file(connection_id, session_key, p) for p in attach or []]
        message = await manager.send_message(connection_id, session_key, text, attachments)
        console.print(f"[green]已发送[/green] {message.id}（{message.status.value}）")

    _run(url, token, name, save, action)


@app.command()
def rename(
    session_key: Annotated[str, typer.Argument(help="会话 key")],
    label: Annotated[str, typer.Argument(help="新名称")],
    url: UrlOption = None,
    token: TokenOption = None,
    name: NameOption = None,
    save: SaveOption = False,
) -> None:
    """重命名会话（sessions.patch）。"""

    async def action(manager: ConnectionManager, connection_id: str):
        await manager.rename_session(connection_id, session_key, label)
        console.print(f"[green]已重命名[/green] {session_key} -> {label}")

    _run(url, token, name, save, action)


@app.command()
def delete(
    session_key: Annotated[str, typer.Argument(help="会话 key")],
    keep_transcript: Annotated[bool, typer.Option("--keep-transcript", help="保留聊天记录文件")] = False,
    url: UrlOption = None,
    token: TokenOption = None,
    name: NameOption = None,
    save: SaveOption = False,
) -> None:
    """删除会话（sessions.delete）。"""

    async def action(manager: ConnectionManager, connection_id: str):
        await manager.delete_session(connection_id, session_key, delete_transcript=not keep_transcript)
        console.print(f"[green]已删除[/green] {session_key}")

    _run(url, token, name, save, action)


@app.command()
def watch(url: UrlOption = None, token: TokenOption = None, name: NameOption = None, save: SaveOption = False) -> None:
    """监听服务端推送（Ctrl+C 退出）。"""

    async def action(manager: ConnectionManager, connection_id: str):
        closed = asyncio.Event()
        manager.on(names.MESSAGE_RECEIVED, lambda p: console.print(f"[cyan]消息[/cyan] {p}"))
        manager.on(names.STATUS_RECEIVED, lambda p: console.print(f"[dim]状态 {p}[/dim]"))
        manager.on(names.CONNECTION_DISCONNECTED, lambda c: closed.set())
        console.print(f"[green]已连接[/green] {connection_id}，等待推送…")
        await closed.wait()

    try:
        _run(url, token, name, save, action)
    except KeyboardInterrupt:
        console.print("已退出")


if __name__ == "__main__":
    app()
