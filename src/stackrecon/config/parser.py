"""YAML configuration parser for stack declarations."""

from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from stackrecon.state.models import StackDescriptor
from stackrecon.utils.errors import ConfigurationError

from .models import ProjectConfig, ReconcilerSettings, StackConfig

DEFAULT_CONFIG_FILE = "stackrecon.yaml"


class ConfigValidationError(ConfigurationError):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        super().__init__(message)
        self.errors = errors or []

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)

    def to_user_message(self) -> str:
        return str(self)


class Config:
    """Loads ``stackrecon.yaml`` and turns its stacks into StackDescriptors."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to the stackrecon.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        if not isinstance(self.data, dict):
            raise ConfigValidationError("Configuration must be a mapping at the top level")

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.project = ProjectConfig(**self.data)
        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        stacks = self.data.get("stacks")
        if stacks is None:
            errors.append({"loc": ["stacks"], "msg": "Required field 'stacks' is missing"})
        elif not isinstance(stacks, list) or len(stacks) == 0:
            errors.append({"loc": ["stacks"], "msg": "At least one stack must be defined"})
        else:
            for idx, stack_data in enumerate(stacks):
                if not isinstance(stack_data, dict):
                    errors.append({"loc": ["stacks", idx], "msg": "Stack must be a mapping"})
                    continue
                try:
                    StackConfig(**stack_data)
                except ValidationError as e:
                    for error in e.errors():
                        errors.append({
                            "loc": ["stacks", stack_data.get("name", idx)] + list(error["loc"]),
                            "msg": error["msg"],
                        })

        if "settings" in self.data:
            try:
                ReconcilerSettings(**(self.data["settings"] or {}))
            except ValidationError as e:
                for error in e.errors():
                    errors.append({"loc": ["settings"] + list(error["loc"]), "msg": error["msg"]})
            except TypeError:
                errors.append({"loc": ["settings"], "msg": "Settings must be a mapping"})

        # Remaining top-level checks, once the sections themselves are valid
        if not errors:
            try:
                ProjectConfig(**self.data)
            except ValidationError as e:
                for error in e.errors():
                    errors.append({"loc": list(error["loc"]), "msg": error["msg"]})

        return errors

    @property
    def settings(self) -> ReconcilerSettings:
        return self.project.settings if self.project else ReconcilerSettings()

    def get_stack(self, name: str) -> Optional[StackConfig]:
        """Get a declared stack by name."""
        for stack in self.project.stacks:
            if stack.name == name:
                return stack
        return None

    def get_descriptors(
        self,
        names: Optional[List[str]] = None,
        region: Optional[str] = None
    ) -> List[StackDescriptor]:
        """Build StackDescriptors for the declared stacks.

        Args:
            names: Stack names to select; all stacks when empty
            region: Region overriding the configured one

        Returns:
            Descriptors in declaration order

        Raises:
            ConfigurationError: If a requested stack is not declared or a
                template file cannot be read
        """
        if names:
            unknown = [n for n in names if self.get_stack(n) is None]
            if unknown:
                available = ", ".join(s.name for s in self.project.stacks)
                raise ConfigurationError(
                    f"Stack(s) not declared: {', '.join(unknown)}. Available stacks: {available}"
                )
            selected = [s for s in self.project.stacks if s.name in names]
        else:
            selected = list(self.project.stacks)

        return [self._to_descriptor(stack, region or self.project.region) for stack in selected]

    def _to_descriptor(self, stack: StackConfig, region: Optional[str]) -> StackDescriptor:
        template_body = stack.template_body
        if stack.template_file:
            template_body = self._read_template(stack.template_file)

        return StackDescriptor(
            name=stack.name,
            region=region,
            account=self.project.account,
            template_body=template_body,
            template_url=stack.template_url,
            parameters=dict(stack.parameters),
            tags={**self.project.tags, **stack.tags},
            capabilities=list(stack.capabilities),
        )

    def _read_template(self, template_file: str) -> str:
        """Read a template file relative to the configuration file."""
        path = Path(template_file)
        if not path.is_absolute():
            path = self.config_path.parent / path

        try:
            body = path.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read template file {path}: {e}", cause=e)
        if not body.strip():
            raise ConfigurationError(f"Template file {path} is empty")
        return body
