"""Static configuration files written into the image.

fstab mounts partitions by GPT label, so it stays valid whichever wedge
numbers the booting kernel assigns. rc.conf decides at boot time whether it
runs on a cloud instance; nothing here depends on the build host.
"""

FSTAB = (
    "NAME=root\t/\t\tffs\trw,noatime\t1 1\n"
    "NAME=swap\tnone\t\tswap\tsw,dp\t\t0 0\n"
    "ptyfs\t\t/dev/pts\tptyfs\trw\n"
    "procfs\t\t/proc\t\tprocfs\trw\n"
    "tmpfs\t\t/var/shm\ttmpfs\trw,-m1777,-sram%25\n"
)

RC_CONF_TEMPLATE = """\
# Generated by nbimagegen

if [ -r /etc/defaults/rc.conf ]; then
	. /etc/defaults/rc.conf
fi

rc_configured=YES

hostname={hostname}

savecore=NO

sshd=YES
ntpd=YES
ntpd_flags="-g"
certctl_init=YES

# Grow the root partition and filesystem to fill the disk on first boot
resize_gpt=YES
resize_root=YES
resize_root_flags="-p"
resize_root_postcmd="/sbin/reboot -n"

mdnsd=YES
devpubd=YES

if /sbin/drvctl -l genfb0 >/dev/null 2>&1; then
	wscons=YES
else
	wscons=NO
fi

is_cloud() {{
	if /sbin/ifconfig ena0 >/dev/null 2>&1; then
		return 0
	fi
	case "$(/sbin/sysctl -n machdep.dmi.chassis-asset-tag 2>/dev/null)" in
	OracleCloud*|"Amazon EC2"*)
		return 0
		;;
	esac
	return 1
}}

dhcpcd=YES
if is_cloud; then
	dhcpcd_flags="-w -qQ"
else
	dhcpcd_flags="-qM"
fi

random_seed=YES
"""


def render_fstab() -> str:
    """Return the contents of /etc/fstab."""
    return FSTAB


def render_rc_conf(hostname: str) -> str:
    """Return the contents of /etc/rc.conf.

    Args:
        hostname: Hostname the system assigns itself at boot.
    """
    return RC_CONF_TEMPLATE.format(hostname=hostname)


__all__ = ["FSTAB", "RC_CONF_TEMPLATE", "render_fstab", "render_rc_conf"]
