"""
Coloured console logging shared by the collectors and the CLI.
"""

import os
import sys
import threading

PRINT_LOCK = threading.Lock()


def _enable_windows_vt_mode() -> bool:
    """
    Enable ANSI escape processing on Windows terminals (cmd.exe/PowerShell).
    Returns True if enabled (or already enabled), False otherwise.
    """
    if os.name != "nt":
        return True

    try:
        import ctypes
        from ctypes import wintypes

        kernel32 = ctypes.windll.kernel32

        for handle_id in (-11, -12):
            h = kernel32.GetStdHandle(handle_id)
            if h in (None, 0, ctypes.c_void_p(-1).value):
                continue

            mode = wintypes.DWORD()
            if not kernel32.GetConsoleMode(h, ctypes.byref(mode)):
                continue

            # ENABLE_VIRTUAL_TERMINAL_PROCESSING = 0x0004
            if not kernel32.SetConsoleMode(h, mode.value | 0x0004):
                continue

        return True
    except (AttributeError, OSError):
        return False


def _supports_color() -> bool:
    if os.environ.get("NO_COLOR") is not None:
        return False

    # Redirected to a file/pipe
    if not sys.stdout.isatty():
        return False

    if os.name == "nt":
        return _enable_windows_vt_mode()

    return True


USE_COLOR = _supports_color()


class C:
    RESET  = "\033[0m"
    INFO   = "\033[94m"  # blue
    SUCCESS= "\033[92m"  # green
    WARN   = "\033[93m"  # yellow
    ERROR  = "\033[91m"  # red
    STEP   = "\033[96m"  # cyan
    HEADER = "\033[95m"  # magenta
    DIM    = "\033[90m"  # gray


def _c(color: str, text: str) -> str:
    if not USE_COLOR:
        return text
    return f"{color}{text}{C.RESET}"


def _emit(color: str, text: str, stream=None) -> None:
    with PRINT_LOCK:
        print(_c(color, text), file=stream or sys.stdout)


def log_info(msg: str):
    _emit(C.INFO, f"[INFO] {msg}")


def log_step(msg: str):
    _emit(C.STEP, f"[+] {msg}")


def log_success(msg: str):
    _emit(C.SUCCESS, f"[OK] {msg}")


def log_warn(msg: str):
    _emit(C.WARN, f"[!] {msg}", sys.stderr)


def log_error(msg: str):
    _emit(C.ERROR, f"[ERROR] {msg}", sys.stderr)


def log_header(msg: str):
    _emit(C.HEADER, f"\n=== {msg} ===")


def log_dim(msg: str):
    _emit(C.DIM, msg)
