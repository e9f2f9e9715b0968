from instantconf.main import main

main()
