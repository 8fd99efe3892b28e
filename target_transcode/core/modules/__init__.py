# Core modules for target_transcode
