"""Application entry point for the helpmate command line."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Callable, List, Optional, TypeVar

from art import tprint
from dotenv import load_dotenv

import settings
from client import HelpmateClient, build_client
from core.activity import ActivityBoard, ActivityEntry, buyer_requests, helper_orders
from core.errors import Forbidden, HelpmateError, UpstreamUnavailable, ValidationFailed
from core.matching import active_match
from core.messaging import MESSAGES_TABLE, message_row, seen_marker_id
from core.models import (
    Category,
    DiscoveryMode,
    GeoPoint,
    LifecycleEvent,
    LineItem,
    Message,
    RealtimeEvent,
    ReceiptSubmission,
    Request,
    RequestChanges,
    RequestDraft,
    RequestStatus,
    UserProfile,
)
from core.polling import Poller
from core.retry import call_with_retry

NAME = "HELPMATE"
FONT = "tarty-1"

T = TypeVar("T")


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    formatter = _RedactingFormatter(_collect_redaction_values(config), fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        # Logs go to stderr so command output on stdout stays clean.
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/helpmate.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
            backupCount=int(file_cfg.get("backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


# Argument parsing helpers


def parse_item(raw: str) -> LineItem:
    """Parse ``name[:quantity[:unit[:image_url]]]``."""

    parts = raw.split(":", 3)
    name = parts[0].strip()
    try:
        quantity = int(parts[1]) if len(parts) > 1 and parts[1].strip() else 1
    except ValueError:
        raise ValidationFailed(f"Quantity for {name or 'item'} must be a whole number.") from None
    unit = parts[2].strip() if len(parts) > 2 and parts[2].strip() else "pcs"
    image = parts[3].strip() if len(parts) > 3 and parts[3].strip() else None
    return LineItem(name=name, quantity=quantity, unit=unit, image=image)


def _location(args: argparse.Namespace) -> Optional[GeoPoint]:
    lat = getattr(args, "lat", None)
    lng = getattr(args, "lng", None)
    if lat is None and lng is None:
        return None
    if lat is None or lng is None:
        raise ValidationFailed("Both --lat and --lng are needed for a location.")
    return GeoPoint(lat, lng)


def _current_user_id(client: HelpmateClient) -> str:
    user = client.auth.current_user()
    if user is None:
        raise Forbidden("Please sign in first (set HELPMATE_USER_ID or pass --user).")
    return user.id


def _call(client: HelpmateClient, operation: Callable[[], T]) -> T:
    return call_with_retry(operation, client.retry)


def _notify(client: HelpmateClient, event: LifecycleEvent) -> None:
    """Deliver a lifecycle notification; a failed delivery never fails the command."""

    if client.notifier is None or not event.recipient_id:
        return
    asyncio.run(_deliver(client, event))


async def _deliver(client: HelpmateClient, event: LifecycleEvent) -> None:
    if client.notifier is None or not event.recipient_id:
        return
    try:
        await client.notifier.send(event)
    except UpstreamUnavailable as exc:
        logging.getLogger(__name__).warning("Notification not delivered: %s", exc.user_message)


def _event(kind: str, request_id: str, actor_id: str, recipient_id: Optional[str], detail: str = "") -> LifecycleEvent:
    return LifecycleEvent(
        kind=kind,
        request_id=request_id,
        actor_id=actor_id,
        recipient_id=recipient_id,
        occurred_at=datetime.now(timezone.utc),
        detail=detail,
    )


# Rendering


def format_request_line(request: Request, distance_km: Optional[float] = None) -> str:
    items = ", ".join(f"{item.quantity} {item.unit} {item.name}" for item in request.items)
    distance = f"{distance_km:.1f} km" if distance_km is not None else "-"
    return (
        f"{request.request_id} | {request.status.value} | {request.category.value} | "
        f"{distance} | tip {request.tip} | {items} | {request.delivery_address}"
    )


def format_message_line(message: Message, viewer_id: str, marker_id: Optional[str]) -> str:
    who = "you" if message.sender_id == viewer_id else message.sender_id
    stamp = message.created_at.astimezone().strftime("%H:%M")
    line = f"[{stamp}] {who}: {message.content}"
    if message.id == marker_id:
        line += "  (Seen)"
    return line


def _print_entries(entries: List[ActivityEntry]) -> None:
    if not entries:
        print("Nothing here yet.")
        return
    for entry in entries:
        line = format_request_line(entry.request)
        if entry.match is not None and entry.request.status != RequestStatus.PENDING:
            line += f" | helper {entry.match.helper_id}"
        if entry.payment is not None:
            line += f" | total {entry.payment.amount_total}"
        print(line)


def _print_chat(messages: tuple, viewer_id: str) -> None:
    marker = seen_marker_id(messages, viewer_id)
    for message in messages:
        print(format_message_line(message, viewer_id, marker))


# Commands


def _cmd_init_db(client: HelpmateClient, args: argparse.Namespace) -> None:
    _print_banner()
    print(f"Database ready at {settings.DB_PATH}")


def _cmd_profile(client: HelpmateClient, args: argparse.Namespace) -> None:
    user_id = _current_user_id(client)
    existing = _call(client, lambda: client.store.get_user(user_id))
    if args.name is None and existing is None:
        raise ValidationFailed("No profile yet. Pass --name to create one.")

    changed = any(
        value is not None for value in (args.name, args.phone, args.address, args.lat, args.lng, args.email)
    )
    if changed:
        base = existing or UserProfile(user_id=user_id, name="")
        name = (args.name if args.name is not None else base.name).strip()
        if not name:
            raise ValidationFailed("Name is required.")
        email = args.email or base.email
        if email is None:
            user = client.auth.current_user()
            email = user.email if user else None
        profile = UserProfile(
            user_id=user_id,
            name=name,
            email=email,
            phone=args.phone or base.phone,
            profile_pic=base.profile_pic,
            home=_location(args) or base.home,
            address=args.address or base.address,
        )
        _call(client, lambda: client.store.upsert_user(profile))
        existing = profile

    home = f"{existing.home.latitude}, {existing.home.longitude}" if existing.home else "-"
    print(f"{existing.name} ({existing.user_id})")
    print(f"Phone: {existing.phone or '-'}")
    print(f"Address: {existing.address or '-'}")
    print(f"Home: {home}")


def _cmd_post(client: HelpmateClient, args: argparse.Namespace) -> None:
    draft = RequestDraft(
        buyer_id=_current_user_id(client),
        items=tuple(parse_item(raw) for raw in args.item),
        delivery_address=args.address,
        tip=args.tip,
        location=_location(args),
        estimated_price=args.estimated,
        payment_method=args.payment,
        purchase_location=args.purchase_location,
        category=args.category,
    )
    request = _call(client, lambda: client.desk.create_request(draft))
    print(f"Posted {request.request_id}")


def _cmd_edit(client: HelpmateClient, args: argparse.Namespace) -> None:
    changes = RequestChanges(
        items=tuple(parse_item(raw) for raw in args.item) if args.item else None,
        delivery_address=args.address,
        tip=args.tip,
        location=_location(args),
        estimated_price=args.estimated,
        purchase_location=args.purchase_location,
        payment_method=args.payment,
    )
    buyer_id = _current_user_id(client)
    request = _call(client, lambda: client.desk.update_request(args.request_id, buyer_id, changes))
    print(format_request_line(request))


def _cmd_withdraw(client: HelpmateClient, args: argparse.Namespace) -> None:
    buyer_id = _current_user_id(client)
    _call(client, lambda: client.desk.withdraw_request(args.request_id, buyer_id))
    print(f"Withdrew {args.request_id}")


def _cmd_browse(client: HelpmateClient, args: argparse.Namespace) -> None:
    user = client.auth.current_user()
    mode = DiscoveryMode(args.mode or settings.DISCOVERY_MODE)
    category = Category(args.category) if args.category else None
    device_location = _location(args)
    if mode == DiscoveryMode.NEAR_ME and device_location is None:
        raise ValidationFailed("near_me needs the current position (--lat and --lng).")
    listing = _call(
        client,
        lambda: client.discovery.list_open_requests(
            user.id if user else None, mode, device_location, category
        ),
    )
    if not listing:
        print("No open requests.")
        return
    for entry in listing:
        print(format_request_line(entry.request, entry.distance_km))


def _cmd_accept(client: HelpmateClient, args: argparse.Namespace) -> None:
    user = client.auth.current_user()
    helper_id = user.id if user else ""
    outcome = _call(client, lambda: client.matching.accept(args.request_id, helper_id))
    print(f"Accepted {outcome.request.request_id}. Buy the items and upload the receipt.")
    _notify(client, _event("accepted", outcome.request.request_id, helper_id, outcome.request.buyer_id))


def _cmd_reject(client: HelpmateClient, args: argparse.Namespace) -> None:
    helper_id = _current_user_id(client)
    request = _call(client, lambda: client.fulfillment.reject(args.request_id, helper_id))
    print(f"Handed back {request.request_id}; it is open again.")
    _notify(client, _event("rejected", request.request_id, helper_id, request.buyer_id))


def _cmd_receipt(client: HelpmateClient, args: argparse.Namespace) -> None:
    helper_id = _current_user_id(client)
    try:
        with open(args.image, "rb") as handle:
            image = handle.read()
    except OSError:
        raise ValidationFailed(f"Cannot read receipt image: {args.image}") from None
    submission = ReceiptSubmission(
        request_id=args.request_id,
        helper_id=helper_id,
        final_price=args.price,
        image=image,
        filename=os.path.basename(args.image),
    )
    outcome = _call(client, lambda: client.fulfillment.mark_receipt_uploaded(submission))
    print(f"Receipt uploaded. Total to pay: {outcome.payment.amount_total}")
    _notify(
        client,
        _event(
            "receipt_uploaded",
            outcome.request.request_id,
            helper_id,
            outcome.request.buyer_id,
            detail=f"Total to pay: {outcome.payment.amount_total}",
        ),
    )


def _cmd_complete(client: HelpmateClient, args: argparse.Namespace) -> None:
    actor_id = _current_user_id(client)
    request = _call(client, lambda: client.fulfillment.mark_completed(args.request_id, actor_id))
    print(f"Order {request.request_id} completed.")
    recipient = _completion_recipient(client, request, actor_id)
    _notify(client, _event("completed", request.request_id, actor_id, recipient))


def _completion_recipient(client: HelpmateClient, request: Request, actor_id: str) -> Optional[str]:
    if actor_id != request.buyer_id:
        return request.buyer_id
    match = active_match(client.store, request)
    return match.helper_id if match else None


def _cmd_send(client: HelpmateClient, args: argparse.Namespace) -> None:
    sender_id = _current_user_id(client)
    body = " ".join(args.text)
    message = _call(client, lambda: client.messaging.send(args.request_id, sender_id, body))
    roles = _call(client, lambda: client.messaging.resolve_roles(args.request_id, sender_id))
    print(format_message_line(message, sender_id, None))
    _notify(client, _event("message", args.request_id, sender_id, roles.counterpart_id, detail=message.content))


def _relay(client: HelpmateClient, messages: List[Message]) -> None:
    """Push re-fetched rows into the local feed so other writers show up."""

    for message in messages:
        client.realtime.publish(RealtimeEvent("update", MESSAGES_TABLE, message_row(message)))


async def _follow_chat(client: HelpmateClient, request_id: str, viewer_id: str) -> None:
    poller = Poller(
        lambda: client.store.list_messages(request_id),
        lambda messages: _relay(client, messages),
        client.polling,
    )
    poll_task = asyncio.create_task(poller.run())
    try:
        async for snapshot in client.messaging.follow(request_id):
            print("\n".join(["", "─" * 14]))
            _print_chat(snapshot, viewer_id)
            if any(message.sender_id != viewer_id and not message.seen for message in snapshot):
                await asyncio.to_thread(client.messaging.mark_seen, request_id, viewer_id)
    finally:
        poller.stop()
        await poll_task


def _cmd_chat(client: HelpmateClient, args: argparse.Namespace) -> None:
    viewer_id = _current_user_id(client)
    roles = _call(client, lambda: client.messaging.resolve_roles(args.request_id, viewer_id))
    counterpart = roles.counterpart.name if roles.counterpart else (roles.counterpart_id or "nobody yet")
    header = f"Chat with {counterpart}"
    if roles.call_link:
        header += f" | call: {roles.call_link}"
    print(header)

    if args.follow:
        _print_banner()
        asyncio.run(_follow_chat(client, args.request_id, viewer_id))
        return

    messages = _call(client, lambda: client.messaging.history(args.request_id))
    _print_chat(tuple(messages), viewer_id)
    _call(client, lambda: client.messaging.mark_seen(args.request_id, viewer_id))


def _activity_fetch(client: HelpmateClient, user_id: str, role: str) -> Callable[[], List[ActivityEntry]]:
    def fetch() -> List[ActivityEntry]:
        if role == "helper":
            orders = helper_orders(client.store, user_id)
            return orders.in_progress + orders.completed
        return buyer_requests(client.store, user_id)

    return fetch


TRACKED_ACTIONS = {
    "accept": RequestStatus.ON_PROGRESS,
    "reject": RequestStatus.PENDING,
    "complete": RequestStatus.COMPLETED,
    "withdraw": RequestStatus.CANCELLED,
}


def _tracked_operation(
    client: HelpmateClient, action: str, request_id: str, user_id: str
) -> Callable[[], Optional[LifecycleEvent]]:
    """The mutation behind ``activity --apply``; returns the notification to send."""

    def accept() -> Optional[LifecycleEvent]:
        outcome = client.matching.accept(request_id, user_id)
        return _event("accepted", request_id, user_id, outcome.request.buyer_id)

    def reject() -> Optional[LifecycleEvent]:
        request = client.fulfillment.reject(request_id, user_id)
        return _event("rejected", request_id, user_id, request.buyer_id)

    def complete() -> Optional[LifecycleEvent]:
        request = client.fulfillment.mark_completed(request_id, user_id)
        return _event("completed", request_id, user_id, _completion_recipient(client, request, user_id))

    def withdraw() -> Optional[LifecycleEvent]:
        client.desk.withdraw_request(request_id, user_id)
        return None

    operation = {"accept": accept, "reject": reject, "complete": complete, "withdraw": withdraw}[action]
    return lambda: _call(client, operation)


async def _watch_activity(
    client: HelpmateClient,
    fetch: Callable[[], List[ActivityEntry]],
    user_id: str,
    apply: Optional[List[str]],
    max_ticks: Optional[int],
) -> None:
    board = ActivityBoard()

    def on_result(entries: List[ActivityEntry]) -> None:
        board.apply_snapshot(entries)
        print(f"\n── refresh {board.generation} ──")
        _print_entries(board.entries())

    poller = Poller(fetch, on_result, client.polling)
    if not apply:
        await poller.run(max_ticks)
        return

    action, request_id = apply
    poll_task = asyncio.create_task(poller.run(max_ticks))
    try:
        event = await board.track(
            request_id,
            TRACKED_ACTIONS[action],
            _tracked_operation(client, action, request_id, user_id),
        )
    except HelpmateError:
        poller.stop()
        await poll_task
        raise

    print(f"\n{action} {request_id}: done")
    if event is not None:
        await _deliver(client, event)
    # Show the settled row now rather than on the next tick.
    on_result(await asyncio.to_thread(fetch))
    await poll_task


def _cmd_activity(client: HelpmateClient, args: argparse.Namespace) -> None:
    user_id = _current_user_id(client)
    fetch = _activity_fetch(client, user_id, args.role)
    if not args.watch:
        if args.apply:
            raise ValidationFailed("--apply needs --watch.")
        _print_entries(_call(client, fetch))
        return
    if args.apply and args.apply[0] not in TRACKED_ACTIONS:
        raise ValidationFailed(f"--apply takes one of: {', '.join(TRACKED_ACTIONS)}.")

    _print_banner()
    asyncio.run(_watch_activity(client, fetch, user_id, args.apply, args.ticks))


def _add_location_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--lat", type=float, help="Latitude in decimal degrees")
    parser.add_argument("--lng", type=float, help="Longitude in decimal degrees")


def _add_request_args(parser: argparse.ArgumentParser, required: bool) -> None:
    parser.add_argument(
        "--item",
        action="append",
        required=required,
        help="name[:quantity[:unit[:image_url]]], repeat for more items",
    )
    parser.add_argument("--address", required=required, help="Delivery address")
    parser.add_argument("--tip", default="0" if required else None, help="Tip for the helper")
    parser.add_argument("--estimated", help="Estimated price of the items")
    parser.add_argument("--payment", default="cash_on_delivery" if required else None, help="cash_on_delivery or online")
    parser.add_argument("--purchase-location", help="Where to buy the items")
    _add_location_args(parser)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="helpmate")
    parser.add_argument("--user", help="Act as this user id instead of HELPMATE_USER_ID")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_db = subparsers.add_parser("init-db", help="Create the database tables")
    init_db.set_defaults(handler=_cmd_init_db)

    profile = subparsers.add_parser("profile", help="Show or update your profile")
    profile.add_argument("--name")
    profile.add_argument("--email")
    profile.add_argument("--phone")
    profile.add_argument("--address")
    _add_location_args(profile)
    profile.set_defaults(handler=_cmd_profile)

    post = subparsers.add_parser("post", help="Post a new request")
    _add_request_args(post, required=True)
    post.add_argument("--category", default="other", choices=[category.value for category in Category])
    post.set_defaults(handler=_cmd_post)

    edit = subparsers.add_parser("edit", help="Edit one of your pending requests")
    edit.add_argument("request_id")
    _add_request_args(edit, required=False)
    edit.set_defaults(handler=_cmd_edit)

    withdraw = subparsers.add_parser("withdraw", help="Withdraw one of your pending requests")
    withdraw.add_argument("request_id")
    withdraw.set_defaults(handler=_cmd_withdraw)

    browse = subparsers.add_parser("browse", help="List open requests")
    browse.add_argument("--mode", choices=[mode.value for mode in DiscoveryMode])
    browse.add_argument("--category", choices=[category.value for category in Category])
    _add_location_args(browse)
    browse.set_defaults(handler=_cmd_browse)

    for command, handler, help_text in (
        ("accept", _cmd_accept, "Accept an open request"),
        ("reject", _cmd_reject, "Hand an accepted request back"),
        ("complete", _cmd_complete, "Confirm the order is done"),
    ):
        sub = subparsers.add_parser(command, help=help_text)
        sub.add_argument("request_id")
        sub.set_defaults(handler=handler)

    receipt = subparsers.add_parser("receipt", help="Upload the receipt and final price")
    receipt.add_argument("request_id")
    receipt.add_argument("--price", required=True, help="Final price paid for the items")
    receipt.add_argument("--image", required=True, help="Path to the receipt photo")
    receipt.set_defaults(handler=_cmd_receipt)

    send = subparsers.add_parser("send", help="Send a chat message")
    send.add_argument("request_id")
    send.add_argument("text", nargs="+")
    send.set_defaults(handler=_cmd_send)

    chat = subparsers.add_parser("chat", help="Show the chat of a request")
    chat.add_argument("request_id")
    chat.add_argument("--follow", action="store_true", help="Keep the chat open and live")
    chat.set_defaults(handler=_cmd_chat)

    activity = subparsers.add_parser("activity", help="Show your requests or orders")
    activity.add_argument("--role", choices=["buyer", "helper"], default="buyer")
    activity.add_argument("--watch", action="store_true", help="Refresh periodically")
    activity.add_argument(
        "--apply",
        nargs=2,
        metavar=("ACTION", "REQUEST_ID"),
        help="While watching, run accept, reject, complete or withdraw on a request",
    )
    activity.add_argument("--ticks", type=int, help="Stop after this many refreshes")
    activity.set_defaults(handler=_cmd_activity)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    _configure_logging()
    logger = logging.getLogger(__name__)

    try:
        client = build_client(args.user)
        args.handler(client, args)
    except HelpmateError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc.user_message}", file=sys.stderr)
        raise SystemExit(1) from None
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    main()
