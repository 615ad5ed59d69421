from wickrelay.app import main

raise SystemExit(main())
