"""
Offline console demo: runs booking conversations in the terminal.

Uses the real conversation manager, slot generator and localization table.
Without ``--workbook`` nothing is persisted and emitted events are only
printed; with it, events are dispatched to a ``DataManager`` writing the
given spreadsheet.

Usage:
    python console_demo.py
    python console_demo.py --scenario booking
    python console_demo.py --scenario manage --workbook ./data/demo.xlsx
"""

import argparse
import asyncio
import uuid
from dataclasses import replace
from typing import Optional

from citabot.api.dispatcher import EventDispatcher
from citabot.config import settings
from citabot.conversation.manager import ConversationManager
from citabot.schemas.conversation_schema import BotResponse, ConversationState
from citabot.storage.data_manager import DataManager

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"


class ConsoleSession:
    """Drives one conversation from the terminal or from a script."""

    # "#n" picks the n-th quick reply offered by the previous bot message
    SCENARIOS: dict[str, list[str]] = {
        "booking": ["/start", "Español", "ACEPTO", "#1", "Sí", "Sí 🔔", "Ver estado", "Finalizar"],
        "manage": [
            "/start", "English", "YES", "#2", "Other time", "#3", "Yes", "No",
            "Change date", "#1", "Cancel", "Yes, cancel", "Check status", "Finish",
        ],
        "deletion": ["/start", "Deutsch", "/daten_loeschen"],
    }

    MAX_INPUT_LENGTH = 500

    def __init__(self, workbook: Optional[str] = None) -> None:
        self.session_id = f"console-{uuid.uuid4().hex[:8]}"
        self.manager = ConversationManager()
        self.data_manager: Optional[DataManager] = None
        self.dispatcher: Optional[EventDispatcher] = None
        if workbook:
            self.data_manager = DataManager(replace(settings.data, workbook_path=workbook, backup_enabled=False))
            self.dispatcher = EventDispatcher(self.data_manager)
        self.quick: list[str] = []

    def bot_say(self, response: BotResponse) -> None:
        print(f"{GREEN}{BOLD}[{settings.bot.name}]{RESET} {GREEN}{response.bot}{RESET}")
        for index, option in enumerate(response.quick, start=1):
            print(f"{YELLOW}   #{index} {option}{RESET}")
        self.quick = list(response.quick)

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    def _resolve(self, text: str) -> str:
        if text.startswith("#") and text[1:].isdigit():
            index = int(text[1:]) - 1
            if 0 <= index < len(self.quick):
                return self.quick[index]
        return text

    async def _send(self, text: str) -> BotResponse:
        response = await self.manager.process_message(self.session_id, text, {"channel": "console"})
        self.bot_say(response)
        for event in response.events:
            self.system_log(f"Event: {event.type.value}")
        if self.dispatcher is not None:
            await self.dispatcher.dispatch(response.events)
        self.system_log(f"State: {response.state.value}")
        return response

    async def _open(self) -> None:
        if self.data_manager is not None:
            await self.data_manager.initialize()

    async def _close(self) -> None:
        if self.data_manager is not None:
            await self.data_manager.close()
            self.system_log(f"Workbook written to {self.data_manager.path}")

    def _banner(self, title: str) -> None:
        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  {settings.company_name} BOOKING ASSISTANT - {title}{RESET}")
        print(f"{BOLD}  Session: {self.session_id}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")
        print()

    def _footer(self, title: str) -> None:
        session = self.manager.get_session(self.session_id, create_if_missing=False)
        print(f"\n{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  {title}{RESET}")
        if session is not None:
            print(f"{DIM}  Final state: {session.state.value}, messages: {len(session.message_history)}{RESET}")
        print(f"{DIM}  Stats: {self.manager.get_stats()}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")

    async def run_scenario(self, scenario: str) -> None:
        """Auto-play a pre-scripted scenario for demo purposes."""
        steps = self.SCENARIOS.get(scenario)
        if not steps:
            print(f"{RED}Unknown scenario: {scenario}{RESET}")
            return

        self._banner(f"Scenario: {scenario}")
        await self._open()
        try:
            for step in steps:
                text = self._resolve(step)
                print(f"\n{BLUE}[Customer] {RESET}{text}")
                response = await self._send(text)
                if response.state == ConversationState.ERROR:
                    break
        finally:
            await self._close()
        self._footer(f"Scenario '{scenario}' complete.")

    async def run(self) -> None:
        self._banner("Console Demo")
        print(f"{DIM}  Type a message, '#n' to pick a quick reply, or 'quit' to exit{RESET}")
        await self._open()
        try:
            await self._send("/start")
            while True:
                user_input = input(f"\n{BLUE}[Customer] {RESET}").strip()
                if not user_input:
                    continue
                if user_input.lower() in ("quit", "exit", "q"):
                    print(f"\n{DIM}Session ended.{RESET}")
                    break
                if len(user_input) > self.MAX_INPUT_LENGTH:
                    print(f"{RED}Message too long ({len(user_input)} characters){RESET}")
                    continue
                response = await self._send(self._resolve(user_input))
                if response.state in (ConversationState.COMPLETED, ConversationState.ERROR):
                    break
        finally:
            await self._close()
        self._footer("Conversation complete.")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Offline console demo")
    parser.add_argument(
        "--scenario",
        choices=sorted(ConsoleSession.SCENARIOS),
        default=None,
        help="Auto-play a pre-scripted scenario instead of interactive mode",
    )
    parser.add_argument(
        "--workbook",
        default=None,
        help="Persist appointments and conversations to this .xlsx file",
    )
    args = parser.parse_args(argv)

    session = ConsoleSession(workbook=args.workbook)
    if args.scenario:
        asyncio.run(session.run_scenario(args.scenario))
    else:
        asyncio.run(session.run())


if __name__ == "__main__":
    main()
