from __future__ import annotations

import argparse
from dataclasses import asdict
import pprint

from chart_confluence_bot.config import SignalSettings, load_config


def main():
    p = argparse.ArgumentParser(description="Print effective signal settings for a config")
    p.add_argument("--config", required=True, help="Path to YAML config")
    args = p.parse_args()

    cfg = load_config(args.config)

    print("SIGNAL SETTINGS:")
    pprint.pprint(asdict(cfg.signal))
    print("\nBUILT-IN DEFAULTS:")
    pprint.pprint(asdict(SignalSettings()))


if __name__ == "__main__":
    main()
