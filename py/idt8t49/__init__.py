'''Frequency planning and programming for the Renesas (IDT) 8T49N24x clock
synthesizer / jitter attenuator.'''
