from __future__ import annotations

import argparse
import pprint
from dataclasses import asdict

from signal_tracker.config import load_config


def main():
    p = argparse.ArgumentParser(description="Print the effective config (env overrides applied)")
    p.add_argument("--config", required=True, help="Path to YAML config")
    args = p.parse_args()

    cfg = load_config(args.config)
    eff = asdict(cfg)
    if eff["telegram"]["token"]:
        eff["telegram"]["token"] = "***"
    if eff["webhook"]["secret"]:
        eff["webhook"]["secret"] = "***"
    pprint.pprint(eff)


if __name__ == "__main__":
    main()
