"""VPC, per-AZ subnets with route tables and endpoints, and security groups."""

import logging
from typing import Any

from rollout.errors import ProviderError
from rollout.graph.resources import Resource, ResourceKind, SecurityRuleConfig
from rollout.provisioner.context import ProvisionContext
from rollout.provisioner.registry import ProviderResult
from rollout.provisioner.state import ResolvedResource
from rollout.providers.aws.base import (
    AWS,
    AwsProvider,
    replacement_name,
    resource_tags,
    tag_filters,
    tag_specifications,
    translate_errors,
)
from rollout.providers.cidr import carve_cidrs

LOG = logging.getLogger(__name__)

GATEWAY_ENDPOINTS = {"s3"}
GROUP_NAME_LIMIT = 255


@AWS.register(ResourceKind.NETWORK)
class VpcProvider(AwsProvider):
    """VPC plus an attached internet gateway for public subnets."""

    def _find(self, tags: dict[str, str], exclude: str | None) -> str | None:
        with translate_errors("describe vpcs"):
            vpcs = self.clients.ec2.describe_vpcs(Filters=tag_filters(tags))["Vpcs"]
        for vpc in vpcs:
            if vpc["VpcId"] != exclude:
                return vpc["VpcId"]
        return None

    def _ensure_gateway(self, vpc_id: str, tags: dict[str, str]) -> str:
        ec2 = self.clients.ec2
        with translate_errors("describe internet gateways"):
            gateways = ec2.describe_internet_gateways(
                Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}]
            )["InternetGateways"]
        if gateways:
            return gateways[0]["InternetGatewayId"]
        with translate_errors("create internet gateway"):
            igw_id = ec2.create_internet_gateway(
                TagSpecifications=tag_specifications("internet-gateway", tags)
            )["InternetGateway"]["InternetGatewayId"]
            ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
        return igw_id

    def _set_dns(self, vpc_id: str, hostnames: bool) -> None:
        ec2 = self.clients.ec2
        with translate_errors("modify vpc attribute"):
            ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsSupport={"Value": True})
            ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={"Value": hostnames})

    def _outputs(self, resource: Resource, vpc_id: str, ctx: ProvisionContext) -> dict[str, Any]:
        cfg = resource.config
        tags = resource_tags(resource.name, ctx)
        igw_id = self._ensure_gateway(vpc_id, tags) if cfg.internet_gateway else None
        return {"vpc_id": vpc_id, "cidr": cfg.cidr, "internet_gateway_id": igw_id}

    def create(self, resource: Resource, ctx: ProvisionContext) -> ProviderResult:
        tags = resource_tags(resource.name, ctx)
        exclude = ctx.replacing.identifier if ctx.replacing else None
        vpc_id = self._find(tags, exclude)
        if vpc_id is None:
            with translate_errors("create vpc"):
                vpc_id = self.clients.ec2.create_vpc(
                    CidrBlock=resource.config.cidr,
                    TagSpecifications=tag_specifications("vpc", tags),
                )["Vpc"]["VpcId"]
            LOG.info("created vpc %s (%s)", vpc_id, resource.config.cidr)
        self._set_dns(vpc_id, resource.config.enable_dns_hostnames)
        return ProviderResult(vpc_id, self._outputs(resource, vpc_id, ctx))

    def update(self, resource: Resource, previous: ResolvedResource, ctx: ProvisionContext) -> ProviderResult:
        self._set_dns(previous.identifier, resource.config.enable_dns_hostnames)
        return ProviderResult(previous.identifier, self._outputs(resource, previous.identifier, ctx))

    def delete(self, resolved: ResolvedResource, ctx: ProvisionContext) -> None:
        ec2 = self.clients.ec2
        with translate_errors(f"delete vpc {resolved.identifier}"):
            gateways = ec2.describe_internet_gateways(
                Filters=[{"Name": "attachment.vpc-id", "Values": [resolved.identifier]}]
            )["InternetGateways"]
            for gateway in gateways:
                ec2.detach_internet_gateway(InternetGatewayId=gateway["InternetGatewayId"], VpcId=resolved.identifier)
                ec2.delete_internet_gateway(InternetGatewayId=gateway["InternetGatewayId"])
            ec2.delete_vpc(VpcId=resolved.identifier)


@AWS.register(ResourceKind.SUBNET)
class SubnetProvider(AwsProvider):
    """One subnet per availability zone sharing a route table.

    Public subnets route 0.0.0.0/0 to the internet gateway. Private subnets
    are isolated and reach AWS services through VPC endpoints.
    """

    def _zones(self, count: int) -> list[str]:
        with translate_errors("describe availability zones"):
            zones = self.clients.ec2.describe_availability_zones(
                Filters=[{"Name": "state", "Values": ["available"]}]
            )["AvailabilityZones"]
        names = sorted(z["ZoneName"] for z in zones)
        if len(names) < count:
            raise ProviderError(f"region {self.clients.region} has {len(names)} zones, need {count}")
        return names[:count]

    def _route_table(self, vpc_id: str, tags: dict[str, str]) -> dict[str, Any]:
        ec2 = self.clients.ec2
        with translate_errors("describe route tables"):
            tables = ec2.describe_route_tables(
                Filters=[{"Name": "vpc-id", "Values": [vpc_id]}, *tag_filters(tags)]
            )["RouteTables"]
        if tables:
            return tables[0]
        with translate_errors("create route table"):
            return ec2.create_route_table(
                VpcId=vpc_id, TagSpecifications=tag_specifications("route-table", tags)
            )["RouteTable"]

    def _endpoints(
        self, vpc_id: str, route_table_id: str, subnet_ids: list[str], services: tuple[str, ...]
    ) -> list[str]:
        ec2 = self.clients.ec2
        endpoint_ids = []
        for service in services:
            service_name = f"com.amazonaws.{self.clients.region}.{service}"
            with translate_errors(f"describe vpc endpoint {service}"):
                existing = ec2.describe_vpc_endpoints(
                    Filters=[
                        {"Name": "vpc-id", "Values": [vpc_id]},
                        {"Name": "service-name", "Values": [service_name]},
                    ]
                )["VpcEndpoints"]
            live = [e for e in existing if e.get("State", "available").lower() not in ("deleted", "deleting")]
            if live:
                endpoint_ids.append(live[0]["VpcEndpointId"])
                continue
            args: dict[str, Any] = {"VpcId": vpc_id, "ServiceName": service_name}
            if service in GATEWAY_ENDPOINTS:
                args.update(VpcEndpointType="Gateway", RouteTableIds=[route_table_id])
            else:
                args.update(VpcEndpointType="Interface", SubnetIds=subnet_ids, PrivateDnsEnabled=True)
            with translate_errors(f"create vpc endpoint {service}"):
                endpoint_ids.append(ec2.create_vpc_endpoint(**args)["VpcEndpoint"]["VpcEndpointId"])
        return endpoint_ids

    def create(self, resource: Resource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        ec2 = self.clients.ec2
        tags = resource_tags(resource.name, ctx)
        vpc_id = ctx.output(cfg.network, "vpc_id")
        cidrs = carve_cidrs(ctx.output(cfg.network, "cidr"), cfg.cidr_mask, cfg.offset, cfg.az_count)
        zones = self._zones(cfg.az_count)

        with translate_errors("describe subnets"):
            existing = {
                s["CidrBlock"]: s["SubnetId"]
                for s in ec2.describe_subnets(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])["Subnets"]
            }
        subnet_ids = []
        for cidr, zone in zip(cidrs, zones):
            if cidr in existing:
                subnet_ids.append(existing[cidr])
                continue
            with translate_errors(f"create subnet {cidr}"):
                subnet_ids.append(
                    ec2.create_subnet(
                        VpcId=vpc_id,
                        CidrBlock=cidr,
                        AvailabilityZone=zone,
                        TagSpecifications=tag_specifications("subnet", tags),
                    )["Subnet"]["SubnetId"]
                )

        table = self._route_table(vpc_id, tags)
        table_id = table["RouteTableId"]
        associated = {a.get("SubnetId") for a in table.get("Associations", [])}
        with translate_errors("configure routing"):
            for subnet_id in subnet_ids:
                if subnet_id not in associated:
                    ec2.associate_route_table(RouteTableId=table_id, SubnetId=subnet_id)
            if cfg.tier == "public":
                gateway_id = ctx.output(cfg.network, "internet_gateway_id")
                if not gateway_id:
                    raise ProviderError(f"{resource.name}: public subnets need a network with an internet gateway")
                routes = {r.get("DestinationCidrBlock") for r in table.get("Routes", [])}
                if "0.0.0.0/0" not in routes:
                    ec2.create_route(RouteTableId=table_id, DestinationCidrBlock="0.0.0.0/0", GatewayId=gateway_id)
                for subnet_id in subnet_ids:
                    ec2.modify_subnet_attribute(SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True})

        endpoint_ids = self._endpoints(vpc_id, table_id, subnet_ids, cfg.endpoints)
        LOG.info("%s subnets %s in %s", cfg.tier, ", ".join(subnet_ids), ", ".join(zones))
        return ProviderResult(
            ",".join(subnet_ids),
            {
                "subnet_ids": subnet_ids,
                "cidrs": cidrs,
                "availability_zones": zones,
                "route_table_id": table_id,
                "endpoint_ids": endpoint_ids,
            },
        )

    def delete(self, resolved: ResolvedResource, ctx: ProvisionContext) -> None:
        ec2 = self.clients.ec2
        outputs = resolved.outputs
        with translate_errors(f"delete subnets {resolved.identifier}"):
            if outputs.get("endpoint_ids"):
                ec2.delete_vpc_endpoints(VpcEndpointIds=outputs["endpoint_ids"])
            table_id = outputs.get("route_table_id")
            if table_id:
                tables = ec2.describe_route_tables(RouteTableIds=[table_id])["RouteTables"]
                for association in tables[0].get("Associations", []) if tables else []:
                    if not association.get("Main"):
                        ec2.disassociate_route_table(AssociationId=association["RouteTableAssociationId"])
                ec2.delete_route_table(RouteTableId=table_id)
            for subnet_id in outputs.get("subnet_ids", []):
                ec2.delete_subnet(SubnetId=subnet_id)


def _ip_permissions(cfg: SecurityRuleConfig, ctx: ProvisionContext) -> list[dict[str, Any]]:
    permissions = []
    for rule in cfg.ingress:
        permission: dict[str, Any] = {"IpProtocol": rule.protocol, "FromPort": rule.port, "ToPort": rule.port}
        if rule.cidr:
            permission["IpRanges"] = [{"CidrIp": rule.cidr, "Description": rule.description}]
        else:
            permission["UserIdGroupPairs"] = [
                {"GroupId": ctx.output(rule.source, "group_id"), "Description": rule.description}
            ]
        permissions.append(permission)
    return permissions


@AWS.register(ResourceKind.SECURITY_RULE)
class SecurityGroupProvider(AwsProvider):
    """Security group whose ingress is replaced wholesale on every change; egress stays open."""

    def _find(self, vpc_id: str, group_name: str) -> list[dict[str, Any]]:
        with translate_errors(f"describe security group {group_name}"):
            return self.clients.ec2.describe_security_groups(
                Filters=[
                    {"Name": "vpc-id", "Values": [vpc_id]},
                    {"Name": "group-name", "Values": [group_name]},
                ]
            )["SecurityGroups"]

    def _sync_ingress(self, group_id: str, cfg: SecurityRuleConfig, ctx: ProvisionContext) -> None:
        ec2 = self.clients.ec2
        with translate_errors(f"update ingress of {group_id}"):
            groups = ec2.describe_security_groups(GroupIds=[group_id])["SecurityGroups"]
            current = groups[0].get("IpPermissions", []) if groups else []
            if current:
                ec2.revoke_security_group_ingress(GroupId=group_id, IpPermissions=current)
            desired = _ip_permissions(cfg, ctx)
            if desired:
                ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=desired)

    def create(self, resource: Resource, ctx: ProvisionContext) -> ProviderResult:
        cfg = resource.config
        ec2 = self.clients.ec2
        vpc_id = ctx.output(cfg.network, "vpc_id")
        group_name = cfg.group_name
        found = self._find(vpc_id, group_name)
        if found and ctx.replacing and found[0]["GroupId"] == ctx.replacing.identifier:
            # group names are unique per VPC and the superseded group is still there
            group_name = replacement_name(cfg.group_name, ctx.replacing, GROUP_NAME_LIMIT)
            found = self._find(vpc_id, group_name)
        if found:
            group_id = found[0]["GroupId"]
        else:
            with translate_errors(f"create security group {group_name}"):
                group_id = ec2.create_security_group(
                    GroupName=group_name,
                    Description=cfg.description or cfg.group_name,
                    VpcId=vpc_id,
                    TagSpecifications=tag_specifications("security-group", resource_tags(resource.name, ctx)),
                )["GroupId"]
        self._sync_ingress(group_id, cfg, ctx)
        return ProviderResult(group_id, {"group_id": group_id, "vpc_id": vpc_id})

    def update(self, resource: Resource, previous: ResolvedResource, ctx: ProvisionContext) -> ProviderResult:
        self._sync_ingress(previous.identifier, resource.config, ctx)
        return ProviderResult(previous.identifier, dict(previous.outputs))

    def delete(self, resolved: ResolvedResource, ctx: ProvisionContext) -> None:
        with translate_errors(f"delete security group {resolved.identifier}"):
            self.clients.ec2.delete_security_group(GroupId=resolved.identifier)
