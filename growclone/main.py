import argparse
import sys
from pathlib import Path

from growclone.config import settings
from growclone.domain.models import LabelType, RunMode, RunOptions
from growclone.logging import LoggerFactory, setup_logging
from growclone.services.orchestrator import CloneOrchestrator, CloneState
from growclone.storage.exceptions import (
    ConfirmationDeclinedError,
    DeviceError,
    EstimationError,
    ExecutionError,
    PlanningError,
    SafetyError,
    StorageError,
)

EXIT_OK = 0
EXIT_DECLINED = 1
EXIT_ESTIMATION = 2
EXIT_PLANNING = 3
EXIT_SAFETY = 4
EXIT_EXECUTION = 5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="growclone",
        description=(
            "Clone a disk onto another, giving its NTFS partition a new size "
            "and packing the partitions after it at the end of the destination."
        ),
    )
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument(
        "--calc-only",
        dest="mode",
        action="store_const",
        const=RunMode.CALC_ONLY,
        help="Print the recommended size in whole GB and exit",
    )
    modes.add_argument(
        "--auto",
        dest="mode",
        action="store_const",
        const=RunMode.AUTO,
        help="Size the NTFS partition from the estimate, then recreate and clone",
    )
    modes.add_argument(
        "--recreate",
        dest="mode",
        action="store_const",
        const=RunMode.RECREATE,
        help="Recreate the partition table and clone (default)",
    )
    parser.set_defaults(mode=RunMode.RECREATE)
    parser.add_argument(
        "--fill",
        action="store_true",
        help="Grow the NTFS partition to fill the destination minus the reserve",
    )
    parser.add_argument(
        "--reserve-gb",
        type=float,
        default=None,
        help="Space left unallocated with --fill (default from settings, 1)",
    )
    parser.add_argument(
        "--main-part", type=int, default=None, help="Partition number to grow"
    )
    parser.add_argument(
        "--label",
        choices=[LabelType.GPT.value, LabelType.MSDOS.value],
        default=None,
        help="Partition table type for the destination (default: mirror source)",
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Show the plan without writing anything"
    )
    parser.add_argument(
        "-y", "--yes", action="store_true", help="Answer yes to every confirmation"
    )
    parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable verbose debug output"
    )
    parser.add_argument("--trace", action="store_true", help="Enable trace output")
    parser.add_argument("--log-dir", type=Path, default=None, help="Log directory")
    parser.add_argument(
        "--backup-dir",
        type=Path,
        default=None,
        help="Where to save the destination's table and leading sectors",
    )
    parser.add_argument("source", help="Source disk, or the partition to grow")
    parser.add_argument("destination", help="Destination disk")
    parser.add_argument(
        "size_gb", nargs="?", type=float, default=None, help="New size in GB"
    )
    return parser


def build_run_options(args: argparse.Namespace) -> RunOptions:
    """Merge command-line arguments over the stored settings."""
    reserve_gb = args.reserve_gb
    if reserve_gb is None:
        reserve_gb = settings.get_float("reserve_gb", settings.DEFAULT_RESERVE_GB)
    backup_dir = args.backup_dir
    if backup_dir is None:
        backup_dir = Path(settings.get_setting("backup_dir", "."))
    return RunOptions(
        mode=args.mode,
        size_gb=args.size_gb,
        fill=args.fill,
        reserve_gb=reserve_gb,
        main_part=args.main_part,
        label_override=LabelType.parse(args.label) if args.label else None,
        dry_run=args.dry_run,
        auto_confirm=args.yes,
        backup_dir=backup_dir,
        backup_leading_sectors=settings.get_int(
            "backup_leading_sectors", settings.DEFAULT_BACKUP_LEADING_SECTORS
        ),
        alignment_sectors=settings.get_int(
            "alignment_sectors", settings.DEFAULT_ALIGNMENT_SECTORS
        ),
        guard_sectors=settings.get_int("guard_sectors", settings.DEFAULT_GUARD_SECTORS),
        reprobe_timeout_seconds=settings.get_float(
            "reprobe_timeout_seconds", settings.DEFAULT_REPROBE_TIMEOUT_SECONDS
        ),
        growable_fstype=str(settings.get_setting("growable_fstype", "ntfs")).lower(),
        boot_fstype=str(settings.get_setting("boot_fstype", "vfat")).lower(),
    )


def confirm_on_console(prompt: str) -> bool:
    print(prompt, file=sys.stderr)
    try:
        answer = input("Continue? (y/n): ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def exit_code_for(error: StorageError) -> int:
    if isinstance(error, ConfirmationDeclinedError):
        return EXIT_DECLINED
    if isinstance(error, EstimationError):
        return EXIT_ESTIMATION
    if isinstance(error, PlanningError):
        return EXIT_PLANNING
    if isinstance(error, (SafetyError, DeviceError)):
        return EXIT_SAFETY
    return EXIT_EXECUTION


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.size_gb is not None and args.size_gb <= 0:
        parser.error("size_gb must be positive")
    if args.reserve_gb is not None and args.reserve_gb < 0:
        parser.error("--reserve-gb must not be negative")

    options = build_run_options(args)
    if options.alignment_sectors <= 0:
        parser.error(f"alignment_sectors must be positive (got {options.alignment_sectors})")
    if options.guard_sectors < 0:
        parser.error(f"guard_sectors must not be negative (got {options.guard_sectors})")
    if options.reserve_gb < 0:
        parser.error(f"reserve_gb must not be negative (got {options.reserve_gb})")
    setup_logging(
        debug=args.debug,
        trace=args.trace,
        log_dir=args.log_dir,
        file_logging=options.mode is not RunMode.CALC_ONLY,
    )
    log = LoggerFactory.for_system()

    orchestrator = CloneOrchestrator(
        options,
        confirmer=confirm_on_console,
        presenter=print,
    )
    try:
        result = orchestrator.run(args.source, args.destination)
    except ExecutionError as error:
        log.critical(str(error))
        return EXIT_EXECUTION
    except StorageError as error:
        log.error(str(error))
        return exit_code_for(error)
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return EXIT_DECLINED

    if result.state is CloneState.ABORTED:
        log.warning("Aborted; destination left unchanged")
        return EXIT_DECLINED
    if result.recommended_gb is not None:
        print(result.recommended_gb)
    elif result.state is CloneState.DONE:
        log.success(f"Clone of {args.source} to {args.destination} complete")
    return EXIT_OK
