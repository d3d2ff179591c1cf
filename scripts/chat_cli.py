#!/usr/bin/env python3
"""Interactive chat CLI that streams turns from the orchestration service."""

import json
import sys

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt


def parse_sse_line(line: str, current_event: str | None) -> tuple[str | None, dict | None]:
    """Parse one server-sent event line.

    Returns the event name to carry forward and, for a `data:` line, the
    decoded payload paired with that event.
    """
    if line.startswith("event:"):
        return line[len("event:") :].strip(), None
    if line.startswith("data:") and current_event:
        return current_event, json.loads(line[len("data:") :].strip())
    return current_event, None


class ChatCLI:
    """Interactive chat interface for the orchestration service."""

    def __init__(self, base_url: str = "http://localhost:8000", user_id: str = "cli-user"):
        self.base_url = base_url
        self.user_id = user_id
        self.session_id: str | None = None
        self.console = Console()
        self.client = httpx.Client(timeout=120.0)

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]Notes Agent - Interactive Chat[/bold blue]\n"
                f"Chatting as [bold]{self.user_id}[/bold].\n"
                "Commands: /help, /clear, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]Cannot connect to the service at {self.base_url}.[/red]")
            return

        self.console.print("[green]Connected to the orchestration service[/green]\n")

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]")

                if user_input.lower() in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif user_input.lower() == "/help":
                    self._show_help()
                    continue
                elif user_input.lower() == "/clear":
                    self.session_id = None
                    self.console.print("[yellow]Session cleared[/yellow]")
                    continue
                elif user_input.strip() == "":
                    continue

                response = self._stream_message(user_input)
                if response:
                    self._display_response(response)

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]Goodbye![/yellow]")
            self.client.close()

    def _test_connection(self) -> bool:
        try:
            response = self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _stream_message(self, message: str) -> dict | None:
        """Send a message and render its realtime events until the final result arrives."""
        payload = {"message": message, "user_id": self.user_id}
        if self.session_id:
            payload["session_id"] = self.session_id

        result = None
        try:
            with self.client.stream("POST", f"{self.base_url}/conversation/stream", json=payload) as response:
                if response.status_code != 200:
                    response.read()
                    self.console.print(f"[red]API Error: {response.status_code} - {response.text}[/red]")
                    return None

                self.session_id = response.headers.get("X-Session-Id", self.session_id)
                event = None
                for line in response.iter_lines():
                    event, data = parse_sse_line(line, event)
                    if data is None:
                        continue
                    result = self._render_event(event, data) or result
        except httpx.HTTPError as e:
            self.console.print(f"[red]Connection error: {e}[/red]")
            return None

        self.console.print()
        return result

    def _render_event(self, event: str, data: dict) -> dict | None:
        if event == "token":
            self.console.print(data.get("delta", ""), end="", markup=False, highlight=False)
        elif event == "reasoning":
            self.console.print(data.get("delta", ""), end="", style="dim italic", markup=False)
        elif event == "tool_status":
            summary = f" - {data['summary']}" if data.get("summary") else ""
            self.console.print(f"\n[magenta]\\[{data.get('status')}] {data.get('toolName')}{summary}[/magenta]")
        elif event == "error":
            self.console.print(f"\n[red]{data.get('message')}[/red]")
        elif event == "retry":
            self.console.print(f"\n[yellow]Provider hiccup, retrying (attempt {data.get('attempt')})...[/yellow]")
        elif event == "result":
            return data
        return None

    def _display_response(self, response: dict) -> None:
        title = "[bold green]Assistant[/bold green]"
        if response.get("tool_calls"):
            title += f" [dim]({response['tool_calls']} tool calls)[/dim]"
        self.console.print(
            Panel(
                Markdown(response.get("response", "No response")),
                title=title,
                border_style="red" if response.get("error") else "green",
                padding=(1, 2),
            )
        )

    def _show_help(self) -> None:
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /clear - Clear session and start over
• /quit or /exit - Exit the chat

[bold]Example Conversation:[/bold]
1. "Create a note called Groceries with milk and eggs"
2. "Move it into a new folder named Errands"
3. "Show me the folder tree of my inbox"
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
    user_id = sys.argv[2] if len(sys.argv) > 2 else "cli-user"

    chat = ChatCLI(base_url, user_id)
    chat.start()


if __name__ == "__main__":
    main()
