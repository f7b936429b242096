from cronkeeper.cli import main

raise SystemExit(main())
