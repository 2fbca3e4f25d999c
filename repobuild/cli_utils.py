"""
Common CLI utilities and decorators for consistent command behavior.
"""

import json
import logging
import sys
from functools import wraps

import click

from .config import configure_logging, load_config
from .domain.errors import RepobuildError
from .exit_codes import SUCCESS, INTERRUPTED, CommandError, get_exit_code_for_exception

logger = logging.getLogger(__name__)


def error_object(exc: Exception, exit_code: int) -> dict:
    """JSON-serializable description of a failed command."""
    obj = {
        "error": getattr(exc, 'message', None) or str(exc),
        "type": type(exc).__name__,
        "exit_code": exit_code,
    }
    if isinstance(exc, RepobuildError):
        for key, value in exc.to_dict().items():
            if key not in ('type', 'message'):
                obj[key] = value
    return obj


def standard_command(func):
    """
    Decorator that provides standard CLI behavior:
    - Configured logging on stderr, DEBUG with --verbose
    - Data output on stdout (the command prints it)
    - An int return value becomes the exit code
    - Errors printed as one JSON object on stdout, mapped to an exit code
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        verbose = kwargs.get('verbose', False)
        configure_logging(load_config(), verbose=verbose)

        try:
            result = func(*args, **kwargs)
        except KeyboardInterrupt:
            logger.error("Interrupted by user")
            sys.exit(INTERRUPTED)
        except click.ClickException:
            raise
        except CommandError as e:
            logger.error(str(e))
            print(json.dumps(error_object(e, e.exit_code), ensure_ascii=False), flush=True)
            sys.exit(e.exit_code)
        except Exception as e:
            exit_code = get_exit_code_for_exception(e)
            if isinstance(e, RepobuildError):
                logger.error(e.message)
            else:
                logger.error(f"Command failed: {e}", exc_info=verbose)
            print(json.dumps(error_object(e, exit_code), ensure_ascii=False), flush=True)
            sys.exit(exit_code)

        sys.exit(result if isinstance(result, int) else SUCCESS)

    return wrapper


# Standard options that many commands share
common_options = {
    'verbose': click.option('-v', '--verbose', is_flag=True,
                           help='Debug logging on stderr'),
    'pretty': click.option('--pretty', is_flag=True,
                          help='Display as a formatted table instead of JSONL'),
    'dry_run': click.option('--dry-run', is_flag=True,
                           help='Show what would happen without changing anything'),
}


def add_common_options(*option_names):
    """
    Decorator to add common options to a command.

    Example:
        @add_common_options('verbose', 'pretty')
        def my_command(verbose, pretty):
            ...
    """
    def decorator(func):
        for name in reversed(option_names):
            if name in common_options:
                func = common_options[name](func)
        return func
    return decorator
