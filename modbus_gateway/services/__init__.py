"""
Modbus Gateway Services

- gateway - Connection lifecycle, device polling, configuration actions
"""
