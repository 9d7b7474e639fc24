from resilience.interfaces.cli import main

main()
