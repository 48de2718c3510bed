from typing import Dict

# Organiser II hardware registers and system variables
SYSTEM_CONSTANTS: Dict[int, str] = {
    0x0080: 'TIM0_REG',
    0x0081: 'TIM1_REG',
    0x0082: 'TCON_REG',
    0x0083: 'P2_REG',
    0x0084: 'SCON_REG',
    0x0085: 'SBUF_REG',
    0x0086: 'P2_REG',
    0x0087: 'IE_REG',
    0x0088: 'P3_REG',
    0x0089: 'IP_REG',
    0x008D: 'TH1_REG',
    0x008E: 'TH0_REG',
    0x008F: 'TL1_REG',
    0x0090: 'TL0_REG',
    0x0180: 'SCA_LCDCONTROL',
    0x0181: 'sca_lcdcontrol',
    0x2000: 'OS_VARS_START',
}


def lookup_system_name(addr: int) -> str:
    return SYSTEM_CONSTANTS.get(addr & 0xFFFF, 'Unknown')


def format_system_locations(addresses) -> list:
    lines = []
    for addr in sorted(addresses):
        lines.append(f'REM ${addr & 0xFFFF:04X} - {lookup_system_name(addr)}')
    return lines
