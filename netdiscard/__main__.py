from netdiscard import main

main()
