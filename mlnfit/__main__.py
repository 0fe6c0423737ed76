import numpyro

from .fit import main

numpyro.set_host_device_count(4)
numpyro.enable_x64()

main()
