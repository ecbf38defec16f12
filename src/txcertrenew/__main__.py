from txcertrenew.cli import main


main()
