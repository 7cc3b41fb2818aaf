from queuectl.cli.main import main

main()
