import json
import logging
import sys
from typing import Optional

from portfolio_core.aggregator import run_aggregation
from portfolio_core.config import Config, get_config
from portfolio_core.emailer import ContactForm, NotificationDispatcher
from portfolio_core.logger_config import setup_logging
from portfolio_core.models import AggregationResult, NotificationOutcome

logger = logging.getLogger(__name__)


class App:
    def __init__(self):
        self.config: Optional[Config] = None

    def setup_logging(self, level: int = logging.INFO, log_dir: Optional[str] = "logs") -> None:
        """Setup logging using the centralized logging configuration."""
        setup_logging(log_dir=log_dir, log_level=level)

    def load_config(self, config_path: str = "config.yaml") -> Config:
        self.config = get_config(config_path)
        return self.config

    def projects(self, handle: Optional[str] = None, limit: Optional[int] = None) -> AggregationResult:
        handle = handle or self.config.projects.handle
        logger.info(f"Building project list for {handle or '<unset>'}...")
        return run_aggregation(self.config, handle=handle, limit=limit)

    def contact(self, name: str, email: str, subject: str, message: str) -> NotificationOutcome:
        form = ContactForm(NotificationDispatcher(self.config))
        form.update(name=name, email=email, subject=subject, message=message)
        return form.submit()


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Portfolio projects and contact backend")
    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to configuration file"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging"
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Also write rotating log files to this directory"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    projects_parser = subparsers.add_parser("projects", help="Print the project list as JSON")
    projects_parser.add_argument("--handle", type=str, help="GitHub username")
    projects_parser.add_argument("--limit", type=int, help="Maximum number of projects")

    contact_parser = subparsers.add_parser("contact", help="Send one contact form message")
    contact_parser.add_argument("--name", default="")
    contact_parser.add_argument("--email", default="")
    contact_parser.add_argument("--subject", default="")
    contact_parser.add_argument("--message", default="")

    args = parser.parse_args(argv)

    app = App()
    app.setup_logging(level=logging.DEBUG if args.verbose else logging.INFO, log_dir=args.log_dir)
    app.load_config(args.config)

    try:
        if args.command == "projects":
            result = app.projects(handle=args.handle, limit=args.limit)
            if not result.ok:
                logger.error(result.error)
                sys.exit(1)
            print(json.dumps([p.model_dump(mode="json") for p in result.projects], indent=2, ensure_ascii=False))
        else:
            outcome = app.contact(args.name, args.email, args.subject, args.message)
            if not outcome.sent:
                logger.error(outcome.message)
                sys.exit(1)
            logger.info(f"{outcome.message} ({outcome.message_id})")
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)

    sys.exit(0)


if __name__ == "__main__":
    main()
