from leadpilot.cli import main

raise SystemExit(main())
