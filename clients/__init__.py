"""
Runner Pool - Remote API Clients

  clients.proxmox: Proxmox VE (hypervisor)
  clients.github:  GitHub Actions runner registration
"""
