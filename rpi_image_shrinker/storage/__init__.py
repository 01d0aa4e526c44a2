"""Storage operations for the shrink pipeline.

Modules:
    - geometry: Parse dumpe2fs/fdisk output and compute the resize plan
    - filesystem: Check, defragment and shrink the root filesystem
    - partition: Resize the root partition to the planned end sector
    - autoexpand: Install first-boot filesystem expansion
    - imaging: Read the device extent into an image file
    - compression: Compress the finished image
    - sanitize: Clean the root filesystem before imaging
    - devices: Discover and validate the SD card
    - mount, workspace: Scoped mounts and the per-run working directory
"""
