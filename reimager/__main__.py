from __future__ import annotations

import sys

from .cli.argument_parser import parse_args_with_config
from .core.exceptions import Fatal
from .core.utils import U
from .orchestrator.orchestrator import Orchestrator


def main(argv=None) -> None:
    logger = None

    # Phase 1: parse (config errors already went through U.die -> logger)
    try:
        args, conf, logger = parse_args_with_config(argv)
    except Fatal as e:
        if logger is None:
            print(f"💥 ERROR    {e}", file=sys.stderr)
        raise SystemExit(e.code)
    except KeyboardInterrupt:
        print("Interrupted by user (Ctrl+C).", file=sys.stderr)
        raise SystemExit(130)

    if args.dump_config:
        print(U.json_dump(conf))
        raise SystemExit(0)
    if args.dump_args:
        print(U.json_dump(vars(args)))
        raise SystemExit(0)

    # Phase 2: run
    try:
        rc = Orchestrator(logger, args).run()
    except Fatal as e:
        # the pipeline reports its own failures with stage context
        if not getattr(e, "reported", False):
            logger.error(str(e))
        rc = e.code
    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl+C).")
        rc = 130

    raise SystemExit(rc)


if __name__ == "__main__":
    main()
