from zfsbackup.cli import main

main()
