from review_load.cli import main

raise SystemExit(main())
