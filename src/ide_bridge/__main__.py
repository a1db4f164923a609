"""`python -m ide_bridge` 入口。"""

from __future__ import annotations

from ide_bridge.cli.main import main

raise SystemExit(main())
