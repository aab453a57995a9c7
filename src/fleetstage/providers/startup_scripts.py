"""Built-in startup scripts for Sakura Cloud servers.

A server lists startup scripts by note name. Names found here are created
as Sakura notes the first time a server refers to them; any other name must
already exist in the account.
"""

from typing import Dict, Optional

DOCKER_SETUP = """#!/bin/bash
# @sacloud-name "fleetflow-docker-setup"
# @sacloud-once
# @sacloud-desc Install Docker and the compose plugin

set -e

if ! command -v docker &> /dev/null; then
    curl -fsSL https://get.docker.com | sh
    if id "ubuntu" &>/dev/null; then
        usermod -aG docker ubuntu
    fi
fi

systemctl enable docker
systemctl start docker
"""

MISE_SETUP = """#!/bin/bash
# @sacloud-name "fleetflow-mise-setup"
# @sacloud-once
# @sacloud-desc Install mise for every login user

set -e

if ! command -v mise &> /dev/null; then
    curl -fsSL https://mise.run | sh
    echo 'eval "$($HOME/.local/bin/mise activate bash)"' >> /etc/skel/.bashrc
    echo 'eval "$($HOME/.local/bin/mise activate bash)"' >> /root/.bashrc
fi
"""

BUILTIN_SCRIPTS: Dict[str, str] = {
    "fleetflow-docker-setup": DOCKER_SETUP,
    "fleetflow-mise-setup": MISE_SETUP,
}


def get_builtin_script(name: str) -> Optional[str]:
    return BUILTIN_SCRIPTS.get(name)
