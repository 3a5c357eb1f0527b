from roundwatch.cli import main

raise SystemExit(main())
