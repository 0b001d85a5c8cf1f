from .tenant_control_plane import *
