import argparse, json, logging, sys, tempfile
from pathlib import Path
from jupyter_client.kernelspec import install_kernel_spec
from .errors import KernelError
from .handler import VARIANTS
from .kernel import run_kernel

log = logging.getLogger("wirekernel")
spec_dir = Path(__file__).resolve().parents[1] / "share" / "jupyter" / "kernels" / "wirekernel"
spec_names = dict(python="wirekernel", ipython="wirekernel-ipy")


def _run(args):
    try: run_kernel(args.connection_file or args.path, variant=args.variant)
    except (KernelError, OSError, ValueError) as exc:
        log.critical("Kernel failed to start: %s", exc)
        raise SystemExit(1) from exc


def _install(args):
    "Install the kernelspec; the ipython variant gets its own name and `--variant` in argv."
    if args.prefix: prefix = args.prefix
    elif args.sys_prefix: prefix = sys.prefix
    else: prefix = None
    spec = json.loads((spec_dir / "kernel.json").read_text(encoding="utf-8"))
    if args.variant != "python":
        spec["argv"] = spec["argv"] + ["--variant", args.variant]
        spec["display_name"] = "IPython (wirekernel)"
    with tempfile.TemporaryDirectory() as tmp:
        (Path(tmp) / "kernel.json").write_text(json.dumps(spec, indent=2), encoding="utf-8")
        dest = install_kernel_spec(tmp, kernel_name=spec_names[args.variant], user=bool(args.user), prefix=prefix, replace=True)
    print(f"Installed kernelspec {spec_names[args.variant]} in {dest}")


def _parser()->argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wirekernel")
    sub = parser.add_subparsers(dest="command")
    run = sub.add_parser("run", help="Run a kernel for a connection file")
    source = run.add_mutually_exclusive_group(required=True)
    source.add_argument("path", nargs="?", help="Connection file path")
    source.add_argument("-f", "--connection-file", help="Connection file path, as passed by Jupyter kernelspecs")
    run.add_argument("--variant", choices=sorted(VARIANTS), help="Language variant reported in kernel_info")
    run.set_defaults(func=_run)

    install = sub.add_parser("install", help="Install the Jupyter kernelspec")
    scope = install.add_mutually_exclusive_group()
    scope.add_argument("--user", action="store_true", help="Install into user Jupyter dir")
    scope.add_argument("--sys-prefix", action="store_true", help="Install into current env")
    scope.add_argument("--prefix", help="Install into a given prefix")
    install.add_argument("--variant", choices=sorted(VARIANTS), default="python")
    install.set_defaults(func=_install)
    return parser


def main(argv:list[str]|None=None):
    argv = sys.argv[1:] if argv is None else list(argv)
    if argv and argv[0] not in ("run", "install", "-h", "--help"): argv = ["run"] + argv
    args = _parser().parse_args(argv)
    if args.command is None: _parser().error("a command is required")
    args.func(args)


if __name__ == "__main__":
    main()
