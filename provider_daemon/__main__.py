from provider_daemon.server import main

main()
