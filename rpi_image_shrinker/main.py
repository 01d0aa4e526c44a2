import argparse
import signal
import sys
import threading
from datetime import date
from pathlib import Path

from rpi_image_shrinker.__version__ import __version__
from rpi_image_shrinker.config.settings import get_bool, get_setting
from rpi_image_shrinker.logging import LoggerFactory, setup_logging
from rpi_image_shrinker.services.pipeline import COMPRESSION_METHODS, ShrinkPipeline
from rpi_image_shrinker.storage import devices
from rpi_image_shrinker.storage.exceptions import PipelineCancelled, ShrinkError
from rpi_image_shrinker.storage.sanitize import HOSTNAME_RE

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def build_parser():
    parser = argparse.ArgumentParser(
        description="Shrink a Raspberry Pi SD card into a minimal, compressed image"
    )
    parser.add_argument("device", nargs="?", help="SD card device, e.g. /dev/sda")
    parser.add_argument("--hostname", help="Hostname to set on the image")
    parser.add_argument(
        "-y", "--yes", action="store_true", help="Do not ask for confirmation"
    )
    parser.add_argument(
        "-o",
        "--output-dir",
        type=Path,
        default=Path(get_setting("output_dir", ".")),
        help="Directory for the finished image",
    )
    parser.add_argument("--name", help="Image file name without extension")
    parser.add_argument(
        "--compression",
        choices=COMPRESSION_METHODS,
        default=get_setting("compression", "xz"),
    )
    parser.add_argument(
        "--no-sanitize",
        action="store_false",
        dest="sanitize",
        default=get_bool("sanitize_enabled", True),
        help="Keep history, logs, caches and temp files",
    )
    parser.add_argument(
        "--no-zero-fill",
        action="store_false",
        dest="zero_fill",
        default=get_bool("zero_fill_enabled", True),
        help="Do not zero free blocks before imaging",
    )
    parser.add_argument(
        "--no-expand",
        action="store_false",
        dest="auto_expand",
        default=get_bool("auto_expand_enabled", True),
        help="Do not expand the filesystem on first boot",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw tool output")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def select_device(log):
    """Ask the operator to pick one of the candidate disks."""
    candidates = devices.list_candidate_devices()
    if not candidates:
        log.error("No removable disks found")
        return None
    print("Available disks:")
    for index, device in enumerate(candidates, start=1):
        print(f"  {index}) {devices.format_device_label(device)}")
    choice = input(f"Select a disk [1-{len(candidates)}]: ").strip()
    if not choice.isdigit() or not 1 <= int(choice) <= len(candidates):
        log.error(f"Invalid selection: {choice!r}")
        return None
    return candidates[int(choice) - 1]


def confirm(handle) -> bool:
    answer = input(
        f"{handle.path} will be shrunk in place and imaged. "
        "Its partition table is modified. Type 'yes' to continue: "
    )
    return answer.strip().lower() == "yes"


def install_cancel_handler(cancel_event):
    """First Ctrl-C stops at the next stage boundary.

    A second one aborts as soon as the running tool has exited; tools are never
    killed mid-step.
    """
    log = LoggerFactory.for_system()

    def handle_sigint(signum, frame):
        log.warning("Cancelling after the current stage, press Ctrl-C again to abort")
        cancel_event.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, handle_sigint)


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    if args.hostname is not None and not HOSTNAME_RE.match(args.hostname):
        log.error(f"Invalid hostname: {args.hostname!r}")
        return EXIT_FAILED

    try:
        if args.device:
            device = devices.get_device_by_name(args.device.replace("/dev/", "", 1))
        else:
            device = select_device(log)
            if device is None:
                return EXIT_FAILED
        device_path = args.device or devices.device_node(device)
        handle = devices.resolve_device_handle(device_path, device)

        if not args.yes and not confirm(handle):
            log.info("Aborted, nothing was changed")
            return EXIT_OK

        devices.unmount_device(device)
        cancel_event = threading.Event()
        install_cancel_handler(cancel_event)
        pipeline = ShrinkPipeline(
            handle,
            output_dir=args.output_dir,
            image_name=args.name or f"{args.hostname or handle.name}-{date.today():%Y-%m-%d}",
            hostname=args.hostname,
            compression=args.compression,
            sanitize=args.sanitize,
            zero_fill=args.zero_fill,
            auto_expand=args.auto_expand,
            sanitize_paths=get_setting("sanitize_paths"),
            init_resize_path=get_setting("init_resize_path"),
            work_dir_parent=get_setting("work_dir_parent"),
            cancel_event=cancel_event,
        )
        result = pipeline.run()
    except PipelineCancelled as error:
        log.error(str(error))
        return EXIT_CANCELLED
    except KeyboardInterrupt:
        log.error("Aborted by user")
        return EXIT_CANCELLED
    except ShrinkError as error:
        log.error(str(error))
        return EXIT_FAILED

    log.success(f"Image ready: {result.archive_path}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
