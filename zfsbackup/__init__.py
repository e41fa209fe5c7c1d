"""zfsbackup: incremental ZFS snapshot backups driven through zfs send/receive."""
