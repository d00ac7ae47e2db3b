from __future__ import annotations

YAML_EXAMPLE = r"""# reimager configuration example (YAML)
#
# Run:
# sudo reimager --config reimage.yaml run
#
# Merge multiple configs (later overrides earlier):
# sudo reimager --config base.yaml --config site.yaml run
#
# Required CLI values can come from YAML because reimager uses a 2-phase parse:
# Phase 0: reads only --config / logging
# Phase 1: loads+merges YAML and applies defaults to argparse
# Phase 2: parses full args
#
# --------------------------------------------------------------------------------------
# Paths
# --------------------------------------------------------------------------------------
# run_dir: /run/reimager             # tmpfs: mount points + log survive the old root
# work_dir: /mnt/reimager            # image download/convert space (must NOT be on the target disk)
# backup_dir: /run/reimager-backup-<timestamp>
# log_file: /run/reimager/reimager.log
#
# --------------------------------------------------------------------------------------
# What to install
# --------------------------------------------------------------------------------------
profile: ubuntu-24.04                # see: reimager profiles
# url: https://example.org/images/custom.qcow2
# sha256: 0123...cdef                # omit only together with allow_unverified
# allow_unverified: false
#
# Extra catalog entries:
# profiles:
#   - key: debian-12-pinned
#     name: Debian 12 (pinned build)
#     url: https://cloud.debian.org/images/cloud/bookworm/20240102-1614/debian-12-generic-amd64-20240102-1614.qcow2
#     sha256: <sha256 of that file>
#
# --------------------------------------------------------------------------------------
# Behaviour
# --------------------------------------------------------------------------------------
# confirm: "YES"                     # non-interactive confirmation token
# allow_small_disk: false            # accept a boot disk below 10 GiB
# datasource: Azure                  # cloud-init datasource pinned in the preserve override
# mount_methods: [nbd, loop, raw]    # raw block copy always runs last
# nbd_slots: 16
# partition_timeout: 30
# dry_run: false                     # stop after the image is downloaded and verified
# reboot: false
# verbose: 1
"""

FEATURE_SUMMARY = """\
 • Detects the boot disk (NVMe, SCSI/virtio/xen, LVM/dm-crypt mapper, fallbacks)
 • Backs up SSH host/user keys, netplan/ifupdown config, cloud-init and waagent config
 • Downloads with resume, verifies SHA-256, converts qcow2/vhd/vmdk/vhdx/vdi to raw
 • Writes a GPT layout (EFI 512 MiB + root), formats vfat/ext4
 • Mounts the image via qemu-nbd, loop+kpartx, or block-copies it as a last resort
 • Restores identity, pins cloud-init so keys survive first boot, writes UUID fstab
 • Installs GRUB for EFI or BIOS and releases every mount/device it acquired
"""

CONFIRM_TEXT = """
╔═══════════════════════════════════════════════════════════════════════════╗
║                         FINAL CONFIRMATION                                ║
╚═══════════════════════════════════════════════════════════════════════════╝

OS to install: {name}
Target disk:   {disk} ({size})
Image URL:     {url}
Checksum:      {checksum}

This operation will:
  • back up SSH keys, network and cloud agent configuration to {backup}
  • download and verify the OS image
  • DESTROY all data on {disk}
  • install the new OS and restore the backed-up configuration
  • install the bootloader

Partitioning is irreversible. Interrupting the run after that point cannot
bring the old system back. Run only one reimager at a time on this machine.
"""

FALLBACK_INSTRUCTIONS = """
╔═══════════════════════════════════════════════════════════════════════════╗
║                    MANAGED DISK SWAP (RECOVERY PATH)                      ║
╚═══════════════════════════════════════════════════════════════════════════╝

If the in-place reimage cannot complete, replace the OS disk from outside:

1. Stop the VM:
   az vm deallocate --resource-group YOUR_RG --name YOUR_VM

2. Snapshot the current OS disk:
   az snapshot create --resource-group YOUR_RG --name os-backup \\
     --source /subscriptions/YOUR_SUB/resourceGroups/YOUR_RG/providers/Microsoft.Compute/disks/YOUR_OS_DISK

3. Create a disk from the new OS image:
   az disk create --resource-group YOUR_RG --name new-os-disk \\
     --source /path/to/downloaded/image.vhd --os-type Linux

4. Swap the OS disk:
   az vm update --resource-group YOUR_RG --name YOUR_VM --os-disk new-os-disk

5. Start the VM:
   az vm start --resource-group YOUR_RG --name YOUR_VM

SSH keys and network configuration were backed up to: {backup}
"""
