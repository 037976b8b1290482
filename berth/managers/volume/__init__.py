from berth.managers.volume.volume import VolumeManager

__all__ = ["VolumeManager"]
