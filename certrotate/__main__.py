from certrotate.cli import main

raise SystemExit(main())
