"""Command line entry point: chat with Perla from a terminal.

Usage:
    # Interactive chat (default)
    perla chat

    # Send one message and exit
    perla chat "Vendí 2 cookies a 3000"

    # Transcribe a voice note and submit it
    perla chat --audio nota.webm

    # Ask for a short observation about the ledger
    perla insights
"""

import argparse
import asyncio
import sys
from pathlib import Path

import structlog

from perla.clients import WhisperTranscriber
from perla.config import bind_owner, configure_logging, get_settings
from perla.errors import PerlaError, TranscriptionError
from perla.events import EventPublisher
from perla.gateway import AssistantGateway, GatewayConfig
from perla.ledger import JsonFileLedgerStore, Ledger, LedgerSync
from perla.session import SalesSession, TurnOutcome

logger = structlog.get_logger(__name__)

HELP_TEXT = """Comandos:
  :list             muestra las ventas (las seleccionadas llevan *)
  :select <id|n>    selecciona una venta por id o por número de la lista
  :deselect <id|n>  quita una venta de la selección
  :all              selecciona todas las ventas
  :clear            limpia la selección
  :insights         pide un comentario sobre tus ventas
  :help             muestra esta ayuda
  :quit             salir"""


def build_session(
    gateway: AssistantGateway,
    owner_id: str,
    ledger_dir: Path,
    publisher: EventPublisher | None = None,
) -> SalesSession:
    """Wire a session to a gateway and the JSON ledger store."""
    store = JsonFileLedgerStore(ledger_dir)
    return SalesSession(
        gateway,
        Ledger(owner_id),
        sync=LedgerSync(store, owner_id),
        publisher=publisher,
    )


def render_outcome(outcome: TurnOutcome) -> str:
    lines = [f"perla> {outcome.message}"] if outcome.message else []
    lines += [f"  + {record.summary()}" for record in outcome.created]
    lines += [f"  ~ {record.summary()}" for record in outcome.updated]
    lines += [f"  - {sale_id}" for sale_id in outcome.deleted_ids]
    return "\n".join(lines)


def render_ledger(session: SalesSession) -> str:
    records = session.ledger.records
    if not records:
        return "No hay ventas registradas."
    selected = set(session.selection)
    return "\n".join(
        f"{'*' if record.id in selected else ' '} {index:>3}. {record.date}  {record.summary()}"
        for index, record in enumerate(records, start=1)
    )


def _resolve_sale_ref(session: SalesSession, ref: str) -> str:
    """Accept a sale id or its 1-based position in :list."""
    if ref.isdigit():
        records = session.ledger.records
        position = int(ref)
        if 1 <= position <= len(records):
            return records[position - 1].id
    return ref


async def handle_command(session: SalesSession, line: str) -> bool:
    """Run a ``:command``. Returns False when the chat should end."""
    name, _, argument = line[1:].strip().partition(" ")
    argument = argument.strip()

    if name in ("quit", "q", "exit"):
        return False
    if name == "help":
        print(HELP_TEXT)
    elif name == "list":
        print(render_ledger(session))
    elif name in ("select", "deselect"):
        if not argument:
            print(f"Uso: :{name} <id|n>")
            return True
        sale_id = _resolve_sale_ref(session, argument)
        try:
            if name == "select":
                session.select(sale_id)
            else:
                session.deselect(sale_id)
        except KeyError:
            print(f"No existe la venta {argument}.")
            return True
        print(f"Seleccionadas: {', '.join(session.selection) or 'ninguna'}")
    elif name == "all":
        session.select_all()
        print(f"Seleccionadas: {len(session.selection)}")
    elif name == "clear":
        session.clear_selection()
        print("Selección vacía.")
    elif name == "insights":
        print(await session.insights() or "Todavía no tengo nada que comentar.")
    else:
        print(f"Comando desconocido :{name}. Usa :help.")
    return True


async def chat_loop(session: SalesSession) -> None:
    print("Perla lista. Escribe tus ventas o :help para ver los comandos.")
    while True:
        try:
            line = await asyncio.to_thread(input, "tú> ")
        except EOFError:
            break
        line = line.strip()
        if not line:
            continue
        if line.startswith(":"):
            if not await handle_command(session, line):
                break
            continue
        print(render_outcome(await session.submit(line)))


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    publisher = EventPublisher() if args.serve_events else None
    if publisher is not None:
        await publisher.start()

    owner_id = args.owner or settings.owner_id
    bind_owner(owner_id)

    gateway = AssistantGateway(GatewayConfig.from_settings(settings))
    session = build_session(
        gateway,
        owner_id,
        args.ledger_dir or settings.ledger_dir,
        publisher,
    )
    try:
        await session.load()

        if args.command == "insights":
            print(await session.insights() or "Todavía no tengo nada que comentar.")
            return 0

        messages = [" ".join(args.message)] if args.message else []
        if args.audio:
            transcriber = WhisperTranscriber()
            try:
                text = await transcriber.transcribe(
                    args.audio.read_bytes(), filename=args.audio.name
                )
            finally:
                await transcriber.close()
            print(f"tú> {text}")
            messages.insert(0, text)

        if messages:
            for message in messages:
                print(render_outcome(await session.submit(message)))
            return 0

        await chat_loop(session)
        return 0
    finally:
        await session.close()
        await gateway.close()
        if publisher is not None:
            await publisher.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="perla",
        description="Perla: registra tus ventas conversando.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s chat                              # Interactive chat
  %(prog)s chat "Vendí 2 cookies a 3000"     # One message
  %(prog)s chat --audio nota.webm            # Voice note
  %(prog)s --owner tienda-centro insights    # Ledger observation
        """,
    )
    parser.add_argument("--owner", help="Ledger owner id (default: OWNER_ID)")
    parser.add_argument(
        "--ledger-dir", type=Path, help="Directory holding the JSON ledgers (default: LEDGER_DIR)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: LOG_LEVEL)",
    )
    parser.add_argument(
        "--serve-events",
        action="store_true",
        help="Publish session events on the WebSocket server (WS_HOST:WS_PORT)",
    )

    subparsers = parser.add_subparsers(dest="command")
    chat = subparsers.add_parser("chat", help="Chat with Perla (default)")
    chat.add_argument("--audio", type=Path, help="Audio file to transcribe and submit")
    chat.add_argument("message", nargs="*", help="Message to submit instead of starting a chat")
    subparsers.add_parser("insights", help="Print a short observation about the ledger")

    parser.set_defaults(command="chat", audio=None, message=[])
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level)

    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("chat_interrupted")
        return 130
    except TranscriptionError as e:
        print(f"No pude transcribir el audio: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"No pude leer el archivo: {e}", file=sys.stderr)
        return 1
    except PerlaError as e:
        logger.exception("perla_error", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
