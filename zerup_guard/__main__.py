from zerup_guard.cli import main

main()
