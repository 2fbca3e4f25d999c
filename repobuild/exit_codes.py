"""
Standard exit codes for repobuild commands.

Following Unix/POSIX conventions for command-line tools. Callers can tell
resolution, build, test and packaging failures apart by exit code.
"""

# Standard POSIX exit codes
SUCCESS = 0              # Successful termination
GENERAL_ERROR = 1        # General errors
USAGE_ERROR = 2          # Misuse of shell command (wrong arguments, unsupported platform)

# Application-specific exit codes (64-113 are typically available)
CONFIG_ERROR = 66        # Configuration file error
PERMISSION_ERROR = 67    # Insufficient permissions
NETWORK_ERROR = 68       # Network connection failed
DATA_ERROR = 70          # Data format or validation error
PARTIAL_SUCCESS = 71     # Some platforms were planned, some were rejected
RESOLUTION_FAILURE = 72  # Baseline graph could not be resolved
BUILD_FAILURE = 73       # fetch or load stage failed
TEST_FAILURE = 74        # test stage failed
PACKAGING_FAILURE = 75   # package, sign or publish stage failed
RELEASE_FAILURE = 76     # Release set inconsistent or publication failed
INSTALL_FAILURE = 77     # Install refused or aborted
PIN_ERROR = 78           # Version pin registry error
INTERRUPTED = 130        # Terminated by Ctrl+C (SIGINT) or cancelled

# Exit code mappings for common exceptions, by class name
EXCEPTION_EXIT_CODES = {
    'FileNotFoundError': GENERAL_ERROR,
    'PermissionError': PERMISSION_ERROR,
    'ConnectionError': NETWORK_ERROR,
    'TimeoutError': NETWORK_ERROR,
    'ValueError': DATA_ERROR,
    'KeyError': DATA_ERROR,
    'JSONDecodeError': DATA_ERROR,
    'ConfigError': CONFIG_ERROR,
    'KeyboardInterrupt': INTERRUPTED,
}

# Exit codes for repobuild error families, by base class name
FAMILY_EXIT_CODES = {
    'ResolutionError': RESOLUTION_FAILURE,
    'PlanningError': USAGE_ERROR,
    'StageError': BUILD_FAILURE,
    'ReleaseError': RELEASE_FAILURE,
    'InstallError': INSTALL_FAILURE,
    'PinError': PIN_ERROR,
    'StoreLocked': GENERAL_ERROR,
}


def get_exit_code_for_exception(exc: Exception) -> int:
    """
    Get the appropriate exit code for an exception.

    repobuild errors map by family (walking the class hierarchy), other
    exceptions by class name.

    Args:
        exc: The exception that occurred

    Returns:
        Appropriate exit code
    """
    exit_code = getattr(exc, 'exit_code', None)
    if isinstance(exit_code, int):
        return exit_code
    for klass in type(exc).__mro__:
        if klass.__name__ in FAMILY_EXIT_CODES:
            return FAMILY_EXIT_CODES[klass.__name__]
    return EXCEPTION_EXIT_CODES.get(exc.__class__.__name__, GENERAL_ERROR)


class CommandError(Exception):
    """
    Exception that commands can raise to indicate specific exit codes.
    """
    def __init__(self, message: str, exit_code: int = GENERAL_ERROR):
        super().__init__(message)
        self.exit_code = exit_code


class ConfigError(CommandError):
    """Raised when there's a configuration error."""
    def __init__(self, message: str):
        super().__init__(message, CONFIG_ERROR)
