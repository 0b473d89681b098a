from cfnplan.cli import main

main()
