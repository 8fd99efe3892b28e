# Utility modules for target_transcode
