import argparse
import os
import shutil
import time
from pathlib import Path
from textwrap import dedent
from typing import Mapping, Optional

from . import constants
from .build import BuildStage
from .composer import PatchComposer
from .escalation import EscalationController
from .flags import (
    BuildSettings, Layout, load_credentials, load_selection, load_settings, norm_bool,
)
from .log import init_log, log_message
from .package import Packager, build_metadata, write_metadata
from .plan import plan_branches
from .shell import git_clone, reset_dir
from .telegram import RunReport, TelegramReporter, start_message, success_caption


def set_timezone(tz: str):
    os.environ["TZ"] = tz
    if hasattr(time, "tzset"):
        time.tzset()


def print_plan(environ: Mapping[str, str], layout: Layout):
    """Logs the patch plan for the flags in environ without running it"""
    selection = load_selection(environ)
    log_message(f"KSU={selection.variant.value} SUSFS={selection.susfs} LXC={selection.lxc}")
    for branch in plan_branches(selection, layout):
        log_message(f"[{branch.name}]" + (" (disabled)" if branch.disabled else ""))
        for step in branch.steps:
            log_message(f"  {step}")


def prepare_sources(settings: BuildSettings):
    layout = settings.layout
    reset_list = [layout.kernel, layout.anykernel, layout.out_dir]
    log_message(f"Reset directories: {' '.join(str(d) for d in reset_list)}")
    for path in reset_list:
        reset_dir(path)
    # Patch sources cloned by the plan must not survive from the last run either
    for path in (layout.susfs, layout.wild_patches, layout.clang):
        if path.exists():
            shutil.rmtree(path)

    git_clone(constants.KERNEL_REPO, layout.kernel)
    git_clone(constants.ANYKERNEL_REPO, layout.anykernel)


def run(settings: BuildSettings, controller: EscalationController,
        reporter: TelegramReporter) -> RunReport:
    """
    Runs every stage in order under the escalation guard

    Returns:
        RunReport: The successful run's report. Failures never return
    """
    layout = settings.layout
    selection = settings.selection

    with controller.guard("Notify"):
        reporter.send_message(start_message(selection, settings.jobs))

    stage = BuildStage(settings)
    with controller.guard("Prepare"):
        prepare_sources(settings)
        stage.fetch_toolchain()
        stage.setup_environment()
        kernel_version = stage.read_kernel_version()
        kconfig = stage.kernel_config()

    composer = PatchComposer(layout, kconfig)
    with controller.guard("Patch"):
        composer.compose(selection)

    with controller.guard("Build"):
        image = stage.build(kconfig)

    with controller.guard("Package"):
        artifact = Packager(settings).package(image, kernel_version)
        metadata = build_metadata(
            kernel_version, stage.compiler_string, stage.build_timestamp,
            selection, layout.workspace, composer.susfs_version,
        )
        log_message(f"Writing build metadata to {layout.metadata_file.name}")
        write_metadata(layout.metadata_file, metadata)

    with controller.guard("Report"):
        caption = success_caption(selection, metadata, artifact)
        reporter.send_document(artifact.package, caption)

    log_message("Build succeeded", "SUCCESS")
    return RunReport("success", f"{artifact.package.name} built",
                     log_path=layout.log_file, artifact_path=artifact.package)


def main(argv: Optional[list[str]] = None, environ: Optional[Mapping[str, str]] = None):
    """
    Main entry point: parses arguments and runs the build process
    """
    parser = argparse.ArgumentParser(
        description=f"{constants.KERNEL_NAME} kernel CI build",
        epilog=dedent("""
            Feature flags are read from the environment:
                KSU=NONE|OFFICIAL|NEXT|SUKI  SUSFS=true|false  LXC=true|false
                RELEASE_BUILD=true suppresses Telegram messages

            Examples:
                KSU=NEXT SUSFS=1 ./build_kernel.py
                    Build KernelSU Next with SuSFS using all CPU cores

                KSU=SUKI LXC=on ./build_kernel.py --plan
                    Show the patch plan without touching anything
        """),
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        "--workspace",
        type=Path,
        default=Path.cwd(),
        help="Directory holding kernel_patches/ and receiving all outputs (default: cwd)"
    )

    parser.add_argument(
        "-j", "--jobs",
        type=int,
        default=os.cpu_count(),
        help=f"Number of parallel build jobs (default: {os.cpu_count()})"
    )

    parser.add_argument(
        "--plan",
        action="store_true",
        help="Print the patch plan for the current flags and exit"
    )

    args = parser.parse_args(argv)
    environ = os.environ if environ is None else environ
    layout = Layout(args.workspace.resolve())

    if args.plan:
        controller = EscalationController(layout.log_file)
        with controller.guard("Plan"):
            print_plan(environ, layout)
        return

    # Console output is duplicated to the log from here on
    init_log(layout.log_file)
    controller = EscalationController(layout.log_file)

    log_message("Validating environment variables...")
    with controller.guard("Validate"):
        credentials = load_credentials(environ)
    reporter = TelegramReporter(
        credentials.tg_bot_token, credentials.tg_chat_id,
        silent=norm_bool(environ.get("RELEASE_BUILD", "false")),
    )
    controller.attach(reporter)

    with controller.guard("Validate"):
        settings = load_settings(environ, layout.workspace, args.jobs)

    set_timezone(constants.TIMEZONE)
    report = run(settings, controller, reporter)
    log_message(f"Run {report.outcome}: {report.message}")
