import argparse
import sys
from pathlib import Path

from zramroot.__version__ import __version__
from zramroot.boot import pivot
from zramroot.boot.cmdline import KernelCmdline
from zramroot.boot.machine import BootStateMachine, SetupResult
from zramroot.config.settings import Settings, load_settings
from zramroot.logging import DEFAULT_KMSG_PATH, get_logger, setup_logging
from zramroot.storage.capacity import Margins, explicit_plan, plan_capacity
from zramroot.storage.exceptions import ConfigError, InsufficientRamError
from zramroot.storage.system import MemoryInfo


EXIT_OK = 0
EXIT_FALLBACK = 1
EXIT_USAGE = 2

log = get_logger(source="main", tags=["cli"])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zramroot",
        description="Run the root filesystem from a compressed RAM block device",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--config", type=Path, default=None, help="Configuration file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("setup", help="Copy the root filesystem to RAM (pre-mount hook)")

    mount_parser = subparsers.add_parser("mount-root", help="Mount the RAM root (mount hook)")
    mount_parser.add_argument("--newroot", default=pivot.DEFAULT_NEWROOT)

    finalize_parser = subparsers.add_parser(
        "finalize", help="Carry the kept physical root into the new root (pre-pivot hook)"
    )
    finalize_parser.add_argument("--newroot", default=pivot.DEFAULT_NEWROOT)

    plan_parser = subparsers.add_parser("plan", help="Print the RAM device size for given inputs")
    plan_parser.add_argument("--used-mib", type=int, required=True)
    plan_parser.add_argument("--available-mib", type=int, required=True)
    plan_parser.add_argument("--total-mib", type=int, default=None)
    plan_parser.add_argument("--algo", default=None, help="Compression algorithm")
    plan_parser.add_argument("--buffer", type=int, default=None, help="Buffer percent")
    plan_parser.add_argument("--size-mib", type=int, default=None, help="Explicit device size")
    return parser


def _load_settings(args) -> Settings:
    settings = load_settings(args.config)
    if settings.debug_mode and not args.debug:
        setup_logging(debug=True)
    return settings


def _triggered(settings: Settings, cmdline: KernelCmdline) -> bool:
    return cmdline.has(settings.trigger_parameter)


def run_setup(args) -> int:
    try:
        settings = _load_settings(args)
    except ConfigError as error:
        log.error(f"{error}, falling back to normal boot")
        return EXIT_FALLBACK
    machine = BootStateMachine(settings, KernelCmdline.read())
    try:
        result = machine.run()
    except Exception as error:
        log.exception(f"Unexpected failure: {error}")
        machine.abort(error)
        return EXIT_FALLBACK
    if result is SetupResult.FALLBACK:
        return EXIT_FALLBACK
    return EXIT_OK


def run_mount_root(args) -> int:
    try:
        settings = _load_settings(args)
    except ConfigError as error:
        log.error(f"{error}, using normal boot")
        return EXIT_FALLBACK
    if not _triggered(settings, KernelCmdline.read()):
        return EXIT_FALLBACK
    return EXIT_OK if pivot.mount_root(args.newroot) else EXIT_FALLBACK


def run_finalize(args) -> int:
    try:
        settings = _load_settings(args)
    except ConfigError as error:
        log.error(str(error))
        return EXIT_OK
    if not _triggered(settings, KernelCmdline.read()):
        return EXIT_OK
    return EXIT_OK if pivot.finalize(args.newroot) else EXIT_FALLBACK


def run_plan(args) -> int:
    try:
        settings = load_settings(args.config) if args.config else Settings()
    except ConfigError as error:
        print(f"Error: {error}", file=sys.stderr)
        return EXIT_USAGE
    algorithm = args.algo or settings.zram_algo
    buffer_percent = settings.zram_buffer_percent if args.buffer is None else args.buffer
    total = args.total_mib if args.total_mib is not None else args.available_mib
    memory = MemoryInfo(total_mib=total, available_mib=args.available_mib)
    margins = Margins.from_settings(settings)
    try:
        if args.size_mib:
            plan = explicit_plan(
                args.size_mib, args.used_mib, buffer_percent, algorithm, memory, margins
            )
        else:
            plan = plan_capacity(args.used_mib, buffer_percent, algorithm, memory, margins)
    except InsufficientRamError as error:
        print(f"Error: {error}", file=sys.stderr)
        return EXIT_FALLBACK
    except ValueError as error:
        print(f"Error: {error}", file=sys.stderr)
        return EXIT_USAGE
    print(f"Compression ratio:  {plan.compression_ratio:g} ({algorithm})")
    print(f"Compressed size:    {plan.compressed_mib} MiB")
    print(f"RAM device size:    {plan.target_size_mib} MiB")
    print(f"Sizing mode:        {plan.mode.value}")
    return EXIT_OK


COMMANDS = {
    "setup": run_setup,
    "mount-root": run_mount_root,
    "finalize": run_finalize,
    "plan": run_plan,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    kmsg_path = None if args.command == "plan" else DEFAULT_KMSG_PATH
    setup_logging(debug=args.debug, kmsg_path=kmsg_path)
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
