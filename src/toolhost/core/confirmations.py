"""
Confirmation broker - pending approval requests keyed by call id.

A UI (or the CLI) receives each request through `on_request` and answers it
with `resolve()` / `reject()`. Unanswered requests time out as denied.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from loguru import logger
from rich.console import Console
from rich.prompt import Confirm


@dataclass
class ConfirmationRequest:
    tool_id: str
    args: Dict[str, Any]
    description: str = ""
    call_id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=datetime.now)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "tool_id": self.tool_id,
            "args": self.args,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
        }


RequestCallback = Callable[[ConfirmationRequest], Any]


class ConfirmationBroker:
    def __init__(
        self,
        *,
        default_timeout: float = 60.0,
        auto_approve: bool = False,
        on_request: Optional[RequestCallback] = None,
    ) -> None:
        self.default_timeout = default_timeout
        self.auto_approve = auto_approve
        self._on_request = on_request
        self._pending: Dict[str, tuple[ConfirmationRequest, asyncio.Future]] = {}

    def set_request_handler(self, handler: Optional[RequestCallback]) -> None:
        self._on_request = handler

    async def request(
        self,
        tool_id: str,
        args: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
        description: str = "",
    ) -> bool:
        """Ask for approval; returns False on denial or timeout."""
        if self.auto_approve:
            logger.debug(f"Auto-approved {tool_id}")
            return True

        req = ConfirmationRequest(tool_id=tool_id, args=dict(args or {}), description=description)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req.call_id] = (req, future)
        logger.info(f"Confirmation requested for {tool_id} (call {req.call_id})")

        try:
            if self._on_request is not None:
                outcome = self._on_request(req)
                if inspect.isawaitable(outcome):
                    await outcome
            wait_for = self.default_timeout if timeout is None else timeout
            return bool(await asyncio.wait_for(future, timeout=wait_for))
        except asyncio.TimeoutError:
            logger.warning(f"Confirmation for {tool_id} timed out")
            return False
        finally:
            self._pending.pop(req.call_id, None)

    def resolve(self, call_id: str, approved: bool = True) -> bool:
        entry = self._pending.get(call_id)
        if entry is None:
            logger.debug(f"No pending confirmation with id {call_id}")
            return False
        req, future = entry
        if not future.done():
            future.set_result(bool(approved))
        logger.info(f"Confirmation {call_id} for {req.tool_id}: {'approved' if approved else 'denied'}")
        return True

    def reject(self, call_id: str, reason: str = "") -> bool:
        entry = self._pending.get(call_id)
        if entry is not None:
            entry[0].reason = reason or None
        return self.resolve(call_id, approved=False)

    def pending(self) -> List[ConfirmationRequest]:
        return [req for req, _ in self._pending.values()]

    def cancel_all(self) -> None:
        for call_id in list(self._pending):
            self.reject(call_id, reason="cancelled")


def console_prompt(broker: ConfirmationBroker, console: Optional[Console] = None) -> RequestCallback:
    """Handler that asks on the terminal and answers the request by its call id."""
    console = console or Console()

    async def _ask(req: ConfirmationRequest) -> None:
        console.print(f"[yellow]Tool[/] [cyan]{req.tool_id}[/] wants to run")
        if req.description:
            console.print(f"  {req.description}")
        if req.args:
            console.print_json(json.dumps(req.args, default=str))
        approved = await asyncio.to_thread(Confirm.ask, "Allow this call?", console=console, default=False)
        if approved:
            broker.resolve(req.call_id, approved=True)
        else:
            broker.reject(req.call_id, reason="denied at prompt")

    return _ask
