
# All the frequencies are in Hz, as integers.
Hz = 1
kHz = 1000 * Hz
MHz = 1000 * kHz
GHz = 1000 * MHz

# The VCO range of the 8T49N24x.
FVCO_MIN = 3 * GHz
FVCO_MAX = 4 * GHz

# Output and input frequency limits.
FOUT_MIN = 8 * kHz
FOUT_MAX = 400 * MHz
FIN_MIN = 8 * kHz
FIN_MAX = 875 * MHz

# Max phase detector frequency.  This puts a lower bound on the pre-divider.
FPD_MAX = 128 * kHz

# Pre-divider and feedback multiplier limits.
P_MAX = 1 << 22
M_MAX = 1 << 24

# NS1 ratios.  The divide by 1 is only usable in bypass.
NS1_RATIOS = 4, 5, 6
NS1_BYPASS = 1

# Fixed point scales for the DSM fraction and the output divider fraction.
DSM_FRAC_BITS = 21
NFRAC_BITS = 28

# Calibration control values, written before and after programming.
CAL_DISABLE = 0x05
CAL_ENABLE = 0x00

# The crystal on the HDMI 2.1 FMC card.
XTAL_FREQ = 40 * MHz
