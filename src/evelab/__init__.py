"""
evelab — single-node virtual lab provisioning on Google Compute Engine.

Creates the boot image, compute instance and firewall rules for an
EVE-NG style lab, then bootstraps the instance over SSH. Tears it all
down again when the lab is no longer needed.
"""

__version__ = "0.1.0"
__author__ = "evelab contributors"
