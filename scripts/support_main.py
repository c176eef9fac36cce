"""Process a single GitHub issue event with the support concierge."""

from __future__ import annotations

from support_concierge.__main__ import main


if __name__ == "__main__":
    raise SystemExit(main())
