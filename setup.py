from setuptools import setup, find_packages
import os

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
try:
    with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
        long_description = f.read()
except FileNotFoundError:
    long_description = "Target Transcode - quality-targeted video transcoding with a job queue"

setup(
    name="target-transcode",
    version="1.0.0",
    description="Quality-targeted video transcoding: VMAF-driven CRF search, chunked encoding and a job queue",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["target_transcode", "target_transcode.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Multimedia :: Video :: Conversion",
    ],
    python_requires=">=3.9",
    install_requires=[
        "tqdm>=4.0.0",
        "psutil>=5.0.0",  # Core count validation, process-tree termination
    ],
    extras_require={
        "dev": [
            "pytest",
            "black",
            "flake8",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
