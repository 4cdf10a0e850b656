import os
import sys
import signal
import shutil
from pathlib import Path
from typing import Optional, List, NoReturn

from mailsync.utils.config import Config
from mailsync.utils.colors import Colors
from mailsync.utils.validators import check_default_credentials


class AppRunner:
    """Startup, configuration checks and execution of one mail sync run."""

    def __init__(self, args: Optional[List[str]] = None) -> None:
        """
        Initialize the runner with CLI arguments.

        Args:
            args: Command line arguments (defaults to sys.argv)
        """
        self.args = args if args is not None else sys.argv
        self.config_file = self.args[1] if len(self.args) > 1 else ".env"
        self.pipeline = None

    def run(self) -> int:
        """Execute the main application flow and return the exit code."""
        self.setup_signal_handlers()
        self.print_banner()
        self.ensure_config_exists()
        self.validate_config()
        return self.start_pipeline()

    def setup_signal_handlers(self) -> None:
        """Register handlers for graceful shutdown."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame) -> None:
        """
        First signal during a sync cancels it cooperatively (the current
        batch finishes and is committed); otherwise stop immediately.
        """
        if self.pipeline is not None and not self.pipeline.token.cancelled:
            print("\nReceived shutdown signal, finishing current batch...")
            self.pipeline.stop()
            return
        print("\nReceived shutdown signal, stopping...")
        raise KeyboardInterrupt

    def print_banner(self) -> None:
        print(Colors.colorize("=" * 80, Colors.CYAN))
        print(Colors.colorize("Mail Sync", Colors.BOLD + Colors.CYAN))
        print(Colors.colorize("Incremental IMAP sync with de-duplicated attachment storage", Colors.GREY))
        print(Colors.colorize("=" * 80, Colors.CYAN))
        print()

    def ensure_config_exists(self) -> None:
        """Check that the configuration file exists, offering to create it from the template."""
        if Path(self.config_file).exists():
            return

        if Path(".env.example").exists() and sys.stdin.isatty():
            self._handle_missing_config_interactive()
        else:
            self._handle_missing_config_non_interactive()

    def _handle_missing_config_interactive(self) -> None:
        print(f"Configuration file '{self.config_file}' not found.")
        try:
            response = input(f"Create '{self.config_file}' from template? [Y/n] ").strip().lower()
        except EOFError:
            return self._handle_missing_config_non_interactive()

        if response not in ('', 'y', 'yes'):
            print("Please create a .env file based on .env.example")
            sys.exit(1)

        try:
            shutil.copy(".env.example", self.config_file)
            os.chmod(self.config_file, 0o600)
        except OSError as e:
            print(f"Error creating file: {e}")
            sys.exit(1)

        print(f"Created '{self.config_file}' from '.env.example'.")
        print("IMPORTANT: Please edit it with your account details before running again.")
        sys.exit(0)

    def _handle_missing_config_non_interactive(self) -> NoReturn:
        print(f"Error: Configuration file '{self.config_file}' not found")
        print("Please create a .env file based on .env.example")
        print("You can run: cp .env.example .env")
        sys.exit(1)

    def validate_config(self) -> None:
        """Refuse to start while the configuration still holds example values."""
        try:
            config = Config(self.config_file)
            errors = check_default_credentials(config)
        except Exception as e:
            print(f"{Colors.YELLOW}Warning: Could not validate configuration: {e}{Colors.RESET}")
            return

        if errors:
            print(f"\n{Colors.RED}Configuration Error: Default credentials detected{Colors.RESET}")
            print(f"{Colors.GREY}The following issues must be resolved in your .env file before starting:{Colors.RESET}\n")

            for error in errors:
                print(f"  - {Colors.YELLOW}{error}{Colors.RESET}")

            print(f"\nPlease edit {Colors.BOLD}{self.config_file}{Colors.RESET} with your actual credentials.")
            sys.exit(1)

    def start_pipeline(self) -> int:
        """Instantiate the pipeline, run one sync and print the summary."""
        from mailsync.main import MailSyncPipeline, exit_code_for, print_summary

        print(f"{Colors.GREEN}Starting sync...{Colors.RESET}")
        try:
            self.pipeline = MailSyncPipeline(self.config_file)
            result = self.pipeline.run()
        except ValueError as e:
            print(Colors.error(f"Configuration error: {e}"))
            return 1
        except KeyboardInterrupt:
            print(Colors.warning("Interrupted"))
            return 130

        print_summary(result)
        return exit_code_for(result)
