from bitbonsai_license.cli.main import main

main()
