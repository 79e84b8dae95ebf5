from nonce_monitor.main import main


raise SystemExit(main())
